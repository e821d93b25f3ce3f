import logging
from unittest.mock import Mock


class TestSettings(Mock):
    environment = "test"
    logging = Mock(level=logging.INFO, use_config=False, use_pretty_json=False)
    sync = Mock(fetch_limit=50, inbox_fetch_limit=50, poll_interval=1, poll_jitter_max=0)
    drafts = Mock(debounce_seconds=0.05)
    window = Mock(item_extent=88, buffer=5)
    imap = Mock(timeout=5, connection_limit=2)
    smtp = Mock(timeout=5)
    account = Mock(email="", imap_host="", imap_port=993, smtp_host="", smtp_port=465)
    storage = Mock(blob_dir=".mailsync-test")
