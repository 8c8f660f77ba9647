import os

# Must be set before the application modules read their settings.
os.environ.setdefault("APP_ENV", "testing")

from config import get_settings  # noqa: E402

get_settings.cache_clear()
