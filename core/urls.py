from django.urls import path

from . import views_bills, views_reconciliation

urlpatterns = [
    # Bills
    path("api/bills/", views_bills.api_bill_create, name="api_bill_create"),
    path("api/bills/pay/", views_bills.api_bills_pay_batch, name="api_bills_pay_batch"),
    path("api/bills/<int:bill_id>/", views_bills.api_bill_detail, name="api_bill_detail"),
    path("api/bills/<int:bill_id>/update/", views_bills.api_bill_update, name="api_bill_update"),
    path("api/bills/<int:bill_id>/approve/", views_bills.api_bill_approve, name="api_bill_approve"),
    path("api/bills/<int:bill_id>/reject/", views_bills.api_bill_reject, name="api_bill_reject"),
    path("api/bills/<int:bill_id>/pay/", views_bills.api_bill_pay, name="api_bill_pay"),
    path("api/bills/<int:bill_id>/delete/", views_bills.api_bill_delete, name="api_bill_delete"),
    # Bank reconciliation
    path(
        "api/reconciliation/session/",
        views_reconciliation.api_reconciliation_session,
        name="api_reconciliation_session",
    ),
    path(
        "api/reconciliation/session/save/",
        views_reconciliation.api_reconciliation_session_save,
        name="api_reconciliation_session_save",
    ),
    path(
        "api/reconciliation/session/finish/",
        views_reconciliation.api_reconciliation_session_finish,
        name="api_reconciliation_session_finish",
    ),
    path(
        "api/reconciliation/<int:reconciliation_id>/undo/",
        views_reconciliation.api_reconciliation_undo,
        name="api_reconciliation_undo",
    ),
    path(
        "api/reconciliation/<int:reconciliation_id>/discard/",
        views_reconciliation.api_reconciliation_discard,
        name="api_reconciliation_discard",
    ),
    path(
        "api/reconciliation/history/",
        views_reconciliation.ReconciliationHistoryView.as_view(),
        name="api_reconciliation_history",
    ),
]
