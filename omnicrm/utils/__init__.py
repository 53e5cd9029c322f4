# OmniCRM Utilities
"""
Shared utility functions for OmniCRM services.
"""

from omnicrm.utils.datetime_utils import make_aware, parse_timestamp, utc_now
from omnicrm.utils.db_paths import get_crm_db_path

__all__ = ["make_aware", "parse_timestamp", "utc_now", "get_crm_db_path"]
