from pathlib import Path

CAIRN_DIR = Path.home() / ".cairn"


# --- Content Truncation Limits ---

BASH_OUTPUT_LIMIT = 30000
TOOL_OUTPUT_LIMIT = 50000
GREP_MAX_MATCHES = 200
GLOB_MAX_RESULTS = 500
SUMMARY_TEXT_LIMIT = 500
SUMMARY_TOOL_OUTPUT_LIMIT = 200
SUMMARY_CONTENT_LIMIT = 2000
TITLE_MAX_CHARS = 50
EXPORT_RESULT_LIMIT = 1000


# --- Default Pagination ---

DEFAULT_READ_LINES = 2000
DEFAULT_LIST_LIMIT = 20


# --- Provider ---

DEFAULT_MAX_TOKENS = 8192
DEFAULT_MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds, doubled per attempt
REQUEST_IDLE_TIMEOUT = 300.0  # seconds without content before the stream is abandoned
CONNECT_TIMEOUT = 30.0


# --- Agent Limits ---

MAX_TURNS = 50
TOOL_TIMEOUT = 120  # seconds
BASH_TIMEOUT = 120
DOOM_LOOP_MIN_TURNS = 5
DOOM_LOOP_WINDOW = 10
DOOM_LOOP_REPEATS = 3
DOOM_LOOP_MIN_CALLS = 4


# --- Session ---

SESSION_MAX_AGE_DAYS = 30


# --- Context Compaction ---

CHARS_PER_TOKEN = 4
COMPACTION_THRESHOLD = 100_000  # estimated tokens
COMPACTION_KEEP_RECENT = 10  # messages kept verbatim
