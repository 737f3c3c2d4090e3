from core.exceptions import ConfigurationError
from core.models import Account, AccountingSettings

DEFAULT_ACCOUNTS = [
    ("1010", "Operating Bank", Account.AccountType.ASSET),
    ("1300", "Work in Progress", Account.AccountType.ASSET),
    ("2010", "Accounts Payable", Account.AccountType.LIABILITY),
    ("3000", "Owner's Equity", Account.AccountType.EQUITY),
    ("4010", "Construction Revenue", Account.AccountType.REVENUE),
    ("5010", "General Expenses", Account.AccountType.EXPENSE),
]


def ensure_default_accounts(business):
    """Ensure baseline accounts exist for the given business and return a mapping."""
    accounts = {}
    for code, name, type_ in DEFAULT_ACCOUNTS:
        acc, _ = Account.objects.get_or_create(
            business=business,
            code=code,
            defaults={
                "name": name,
                "type": type_,
            },
        )
        accounts[code] = acc
    return {
        "cash": accounts.get("1010"),
        "wip": accounts.get("1300"),
        "ap": accounts.get("2010"),
        "equity": accounts.get("3000"),
        "revenue": accounts.get("4010"),
        "expense": accounts.get("5010"),
    }


def get_accounting_settings(business) -> AccountingSettings:
    settings_obj, _ = AccountingSettings.objects.get_or_create(business=business)
    return settings_obj


def configure_default_settings(business) -> AccountingSettings:
    """Point blank AP/WIP settings at the seeded default accounts."""
    defaults = ensure_default_accounts(business)
    settings_obj = get_accounting_settings(business)
    updates = []
    if settings_obj.ap_account_id is None:
        settings_obj.ap_account = defaults["ap"]
        updates.append("ap_account")
    if settings_obj.wip_account_id is None:
        settings_obj.wip_account = defaults["wip"]
        updates.append("wip_account")
    if updates:
        settings_obj.save(update_fields=updates + ["updated_at"])
    return settings_obj


def get_ap_account(business) -> Account:
    settings_obj = AccountingSettings.objects.filter(business=business).select_related("ap_account").first()
    if settings_obj is None or settings_obj.ap_account is None:
        raise ConfigurationError("Accounts Payable account not configured in Accounting Settings")
    return settings_obj.ap_account


def get_wip_account(business) -> Account:
    settings_obj = AccountingSettings.objects.filter(business=business).select_related("wip_account").first()
    if settings_obj is None or settings_obj.wip_account is None:
        raise ConfigurationError("Work in Progress account not configured in Accounting Settings")
    return settings_obj.wip_account
