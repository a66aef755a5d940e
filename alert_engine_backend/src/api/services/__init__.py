"""Alert engine core: sample store, series index, rule evaluation, alert state and notification routing.

Background loops live in:
- alerts_evaluator.py (evaluation ticks and sample retention)
- scraper.py (pull ingestion from scrape targets)
"""

# No import side effects; modules are imported by routers/services as needed.
