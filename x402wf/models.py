from django.db import models
from django.utils import timezone


class WorkflowRecord(models.Model):
    class Status(models.TextChoices):
        PENDING_EXECUTION = 'pending_execution', 'Pending execution'
        RUNNING = 'running', 'Running'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    # 0x + 64 hex chars, the authorization nonce
    nonce = models.CharField(max_length=66, unique=True)
    workflow_id = models.CharField(max_length=128, blank=True, default='')
    status = models.CharField(
        max_length=32,
        choices=Status.choices,
        default=Status.PENDING_EXECUTION,
    )
    payer = models.CharField(max_length=128, blank=True, default='')
    network = models.CharField(max_length=64, blank=True, default='')
    detail = models.TextField(blank=True, default='')
    transaction_hash = models.CharField(max_length=128, blank=True, default='')
    result = models.JSONField(blank=True, null=True)
    started_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-started_at']

    def __str__(self) -> str:
        return f'{self.nonce} ({self.status})'
