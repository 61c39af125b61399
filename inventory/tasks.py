"""
Celery tasks for inventory monitoring.

Tasks:
    - report_low_stock: Periodic scan for products needing replenishment
"""
import logging
from celery import shared_task
from django.conf import settings

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def report_low_stock(self, threshold=None):
    """
    Log every active product at or below its low stock threshold.

    Scheduled hourly via Celery Beat (see CELERY_BEAT_SCHEDULE).

    Args:
        threshold: Overrides each product's own threshold. Falls back to
            settings.LOW_STOCK_REPORT_THRESHOLD.

    Returns:
        Dict with the number of flagged products and their details
    """
    from core.django_store import DjangoStore
    from inventory.services import InventoryLedger

    if threshold is None:
        threshold = getattr(settings, 'LOW_STOCK_REPORT_THRESHOLD', None)

    products = InventoryLedger(DjangoStore()).get_low_stock_products(threshold)

    if not products:
        logger.info("[CELERY] Low stock report: all products above threshold")
        return {'count': 0, 'products': []}

    lines = [
        f"  - {p['name']} ({p['sku'] or 'no SKU'}): {p['on_hand']} on hand, "
        f"threshold {p['low_stock_threshold']}, short {p['stock_shortage']}"
        for p in products
    ]
    report = f"""
    ===============================================
    LOW STOCK REPORT - {len(products)} products
    ===============================================
{chr(10).join(lines)}
    ===============================================
    """
    logger.warning(report)

    return {'count': len(products), 'products': products}
