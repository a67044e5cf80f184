from django.urls import path
from django.views.decorators.csrf import csrf_exempt

from x402wf.views import SettleView, SettlementStatusView, SupportedView, VerifyView

app_name = 'x402'

urlpatterns = [
    path('supported', SupportedView.as_view(), name='supported'),
    path('verify', csrf_exempt(VerifyView.as_view()), name='verify'),
    path('settle', csrf_exempt(SettleView.as_view()), name='settle'),
    path('settlement-status', SettlementStatusView.as_view(), name='settlement-status'),
]
