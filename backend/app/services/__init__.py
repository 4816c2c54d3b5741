"""
Progress engine services.

entity_store -> aggregator -> achievements -> progress_engine -> ingestion / queries,
wired together by container.build_services.
"""
