"""
DealFlow Celery Tasks

Task Modules:
    - cleanup: Periodic maintenance of the resilience coordination tables
    - waterfall: Enrichment engine monitoring and data integration hand-off

Queue Priorities:
    - high: waterfall processing
    - normal: maintenance

Usage:
    from backend.tasks import waterfall

    waterfall.process_deal_waterfall.delay(deal_id="deal-123")
"""
