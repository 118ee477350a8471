"""module to hold constants used throughout the project"""

GRID_W = 1000
GRID_H = 1000
SLOT_SIZE = 40
THUMB_SIZE = 40

MAX_UPLOAD_BYTES = 8 * 1024 * 1024
MAX_IMAGE_SIDE = 4096
CAPTION_MAX_LEN = 120
DAILY_UPLOAD_CAP = 100
DAY_MS = 24 * 60 * 60 * 1000

# Random slot sampling attempts before giving up
SAMPLING_BUDGET = 8000
# Fresh random draws after losing a random cell to a concurrent upload
RANDOM_RETRIES = 2

RECENT_MIN = 1
RECENT_MAX = 200
RECENT_DEFAULT = 50

THUMB_FORMAT = "webp"
THUMB_QUALITY = 50

NEW_IMAGE_EVENT = "new_image"

# Viewer tuning
CACHE_MAX_ENTRIES = 5000
KEEP_MARGIN = 2
PREFETCH_HALO = 12
LOD_SWITCH_PX = 160
LOD_SWITCH_PX_MOBILE = 300
# Wait before asking again for a full image that was missing or failed
LOD_RETRY_MS = 5000
BASE_DELAY_MS = 120
MIN_BACKOFF_MS = 250
MAX_BACKOFF_MS = 5000
ERROR_DELAY_MS = 300
NETWORK_ERROR_DELAY_MS = 500
FEED_SIZE = 50
