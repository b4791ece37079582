from __future__ import annotations

from prometheus_client import Counter, Histogram

sync_jobs_total = Counter("sync_jobs_total", "Sync jobs finished by provider workers", ["provider", "result"])
sync_items_upserted_total = Counter("sync_items_upserted_total", "Canonical items upserted by sync runs", ["provider"])
sync_job_duration_seconds = Histogram("sync_job_duration_seconds", "Sync job duration (seconds)", ["provider"])

embedding_items_total = Counter("embedding_items_total", "Items handled by the embedding worker", ["result"])
embedding_requests_total = Counter("embedding_requests_total", "Embedding API calls", ["result"])

search_requests_total = Counter("search_requests_total", "Search requests by retrieval path", ["path"])
llm_requests_total = Counter("llm_requests_total", "Chat completion calls", ["result"])
