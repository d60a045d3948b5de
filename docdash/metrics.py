# docdash/metrics.py
from prometheus_client import Counter

uploads_total = Counter("docdash_uploads_total", "Total uploads accepted")
upload_failures_total = Counter("docdash_upload_failures_total", "Upload failures", ["step"])
orphaned_objects_total = Counter(
    "docdash_orphaned_objects_total", "Stored objects left without an uploads row"
)
stats_update_failures_total = Counter(
    "docdash_stats_update_failures_total", "Best-effort user_stats writes that failed", ["action"]
)
deletes_total = Counter("docdash_deletes_total", "Uploads deleted")
delete_failures_total = Counter("docdash_delete_failures_total", "Delete failures", ["step"])
events_dropped_total = Counter(
    "docdash_change_events_dropped_total", "Change events dropped by the reconciler", ["reason"]
)
status_transitions_total = Counter(
    "docdash_status_transitions_total", "Upload status transitions written", ["status"]
)
