from django.contrib import admin

from x402wf.models import WorkflowRecord


@admin.register(WorkflowRecord)
class WorkflowRecordAdmin(admin.ModelAdmin):
    list_display = ("nonce", "workflow_id", "payer", "network", "status", "transaction_hash", "started_at")
    list_filter = ("status", "network")
    search_fields = ("nonce", "workflow_id", "payer", "transaction_hash")
    readonly_fields = ("started_at", "updated_at")
