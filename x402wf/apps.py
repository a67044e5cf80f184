from django.apps import AppConfig


class X402WorkflowConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'x402wf'
    verbose_name = 'x402 settlement workflows'
