"""Constants for the orchestration loop, dispatcher and operators.

Single source of truth for the magic numbers used across the agent package.
Anything a deployment may reasonably tune lives in pilot.config instead.
"""

# ---------------------------------------------------------------------------
# Control tools
# ---------------------------------------------------------------------------
IDLE_TOOL = "idle"
CHAT_MESSAGE_TOOL = "chat-message"
AWARE_ANALYSIS_TOOL = "aware_analysis"
COMPUTER_ACTION_TOOL = "computer_action"
COMPUTER_SCREENSHOT_TOOL = "computer_screenshot"

# ---------------------------------------------------------------------------
# Status texts
# ---------------------------------------------------------------------------
GREETING_FALLBACK_TEXT = "I'm analyzing your request..."
THINKING_STATUS = "Thinking"
DEFAULT_AWARE_STATUS = "Awaiting instructions"
COMPLETE_MESSAGE = "> Agent has finished."
TERMINATE_MESSAGE = "> Agent has been terminated."
STOP_UNWIND_SECONDS = 5.0

# ---------------------------------------------------------------------------
# Prompt reconstruction
# ---------------------------------------------------------------------------
HISTORY_BATCHES_IN_ACTION_PROMPT = 2
TOOL_RESULT_EVENT_MAX_CHARS = 2000
OBSERVATION_MAX_CHARS = 4000

# ---------------------------------------------------------------------------
# LLM retry
# ---------------------------------------------------------------------------
LLM_MAX_RETRIES = 3
LLM_RETRY_BASE_DELAY_SECONDS = 1.0
LLM_RETRY_MAX_DELAY_SECONDS = 15.0
LLM_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------
REMOTE_SCROLL_MAX_AMOUNT = 10
REMOTE_SCROLL_UNIT = 100
ADB_SCROLL_MAX_AMOUNT = 10
ADB_SCROLL_DISTANCE_PX = 100
ADB_SWIPE_DURATION_MS = 300
ADB_WAIT_SECONDS = 2.0
ADB_COMMAND_TIMEOUT_SECONDS = 5
ADB_IME = "com.android.adbkeyboard/.AdbIME"
LOCAL_SCROLL_MAX_AMOUNT = 20
LOCAL_SCROLL_CLICKS_PER_UNIT = 5
