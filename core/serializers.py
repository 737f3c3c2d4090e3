from rest_framework import serializers

from .models import BankReconciliation


class BankReconciliationSerializer(serializers.ModelSerializer):
    statement_date = serializers.DateField(format="%Y-%m-%d")
    completed_by_name = serializers.SerializerMethodField()

    class Meta:
        model = BankReconciliation
        fields = [
            "id",
            "bank_account_id",
            "project_id",
            "statement_date",
            "statement_beginning_balance",
            "statement_ending_balance",
            "reconciled_balance",
            "difference",
            "status",
            "checked_transaction_ids",
            "notes",
            "completed_at",
            "completed_by_name",
        ]
        read_only_fields = fields

    def get_completed_by_name(self, obj):
        from .utils import user_display_name

        return user_display_name(obj.completed_by) if obj.completed_by_id else None
