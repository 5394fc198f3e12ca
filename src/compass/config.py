import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

MODEL_NAME = os.getenv("COMPASS_MODEL", "claude-sonnet-4-5")
ANALYSIS_MODEL = os.getenv("COMPASS_ANALYSIS_MODEL", "claude-haiku-4-5")
WORKSPACE_DIR = Path(
    os.getenv("COMPASS_WORKSPACE", str(Path.home() / "Documents" / "compass-workspace"))
)
CONSOLE_LOG_LEVEL = os.getenv("COMPASS_LOG_LEVEL", "WARNING").upper()

# --- Decision engine thresholds ---
RESISTANCE_THRESHOLD = 2
TACTICAL_DRIFT_THRESHOLD = 3
TACTICAL_REDIRECT_LIMIT = 2
LOW_EFFORT_THRESHOLD = 2
MAX_PUSHBACK_LEVEL = 3
LOW_ENGAGEMENT_EXIT_THRESHOLD = 5
INTAKE_TURNS = 2
HYPOTHESIS_MIN_CONFIDENCE = 0.5
HYPOTHESIS_SWITCH_MARGIN = 0.15
HYPOTHESIS_CLARITY_THRESHOLD = 0.4
CLOSING_CLARITY_THRESHOLD = 0.6
LOW_CAPACITY_THRESHOLD = 0.3
PIVOT_CONFIDENCE_PENALTY = 0.3
MAX_CONVERSATION_TURNS = 50

# --- Response variety ---
VARIETY_WINDOW = 2
VARIETY_HISTORY = 5

# --- Components ---
EMAIL_CAPTURE_TURN_WINDOW = (10, 12)
EMAIL_CAPTURE_MIN_CONFIDENCE = 0.6

# --- Coordinator ---
MAX_COMMIT_ATTEMPTS = 3
RECENT_MESSAGE_WINDOW = 6
