from django.contrib import admin

from .models import (
    Account,
    AccountingSettings,
    BankReconciliation,
    Bill,
    BillLine,
    BillPayment,
    BillPaymentAllocation,
    Business,
    JournalEntry,
    JournalLine,
)


admin.site.site_header = "BuildBooks – System Admin"
admin.site.site_title = "BuildBooks System Admin"


def _superuser_only(request):
    return request.user.is_active and request.user.is_superuser


admin.site.has_permission = _superuser_only


@admin.register(Business)
class BusinessAdmin(admin.ModelAdmin):
    list_display = ("name", "currency", "owner_user", "created_at")
    search_fields = ("name",)


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "type", "business", "is_active")
    list_filter = ("type", "is_active")
    search_fields = ("code", "name")
    ordering = ("business", "code")


@admin.register(AccountingSettings)
class AccountingSettingsAdmin(admin.ModelAdmin):
    list_display = ("business", "ap_account", "wip_account", "updated_at")


class JournalLineInline(admin.TabularInline):
    model = JournalLine
    extra = 0
    fields = ("line_number", "account", "debit", "credit", "project", "cost_code", "memo", "reconciled")
    readonly_fields = fields
    can_delete = False


@admin.register(JournalEntry)
class JournalEntryAdmin(admin.ModelAdmin):
    list_display = ("entry_date", "description", "source_type", "source_id", "is_reversal", "business")
    list_filter = ("source_type", "is_reversal")
    search_fields = ("description",)
    inlines = [JournalLineInline]


class BillLineInline(admin.TabularInline):
    model = BillLine
    extra = 0


@admin.register(Bill)
class BillAdmin(admin.ModelAdmin):
    list_display = ("reference_number", "vendor", "bill_date", "total_amount", "amount_paid", "status")
    list_filter = ("status", "is_reversal")
    search_fields = ("reference_number", "vendor__name")
    inlines = [BillLineInline]


class BillPaymentAllocationInline(admin.TabularInline):
    model = BillPaymentAllocation
    extra = 0


@admin.register(BillPayment)
class BillPaymentAdmin(admin.ModelAdmin):
    list_display = ("payment_date", "vendor", "payment_account", "total_amount", "reconciled")
    list_filter = ("reconciled",)
    inlines = [BillPaymentAllocationInline]


@admin.register(BankReconciliation)
class BankReconciliationAdmin(admin.ModelAdmin):
    list_display = (
        "bank_account",
        "project",
        "statement_date",
        "statement_ending_balance",
        "display_difference",
        "status",
    )
    list_filter = ("status",)
    ordering = ("-statement_date",)

    @admin.display(description="Difference")
    def display_difference(self, obj):
        return f"{obj.difference:.2f}"
