from axe_desktop.storage.store import DEFAULT_USER_ID, RecordStore, utc_now

__all__ = [
    "DEFAULT_USER_ID",
    "RecordStore",
    "utc_now",
]
