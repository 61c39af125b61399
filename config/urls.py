"""
URL configuration for the stock ledger service.
"""
from django.contrib import admin
from django.urls import path
from django.http import JsonResponse


def health_check(request):
    """Health check endpoint for container orchestration."""
    return JsonResponse({'status': 'healthy', 'service': 'stock-ledger'})


urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', health_check, name='health-check'),
]
