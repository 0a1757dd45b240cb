"""
Engine tunables for sampling, allocation and run tracking.
"""

# Sampling
FARMER_PAGE_SIZE = 500 #attendees are streamed from the db in pages of this size
SAMPLING_RUN_MAX_ACTIVITIES = 5000 #safety cap per run
REACTIVATION_CONFIRM_TOKEN = "YES"

# Allocation
ALLOCATION_SERVER_CAP = 5000
ALL_LANGUAGES = ("all", "__all__")
UNKNOWN_LANGUAGE = "unknown"

# Callbacks
MAX_CALLBACKS = 2
CALLBACK_PARENT_STATUSES = ("completed", "not_reachable")
AUTO_CALLBACK_STATUSES = ("not_reachable",) #outcomes that schedule a callback without a team lead

# Run tracking
PROGRESS_FLUSH_EVERY = 50
RUN_STALE_AFTER_SECONDS = 15 * 60
MAX_STORED_RUN_ERRORS = 50
