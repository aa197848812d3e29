from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Point-to-point routing via OpenRouteService (https://openrouteservice.org)
# Used for custom legs and repositioning moves. Leave the key empty to disable;
# every lookup then fails with a descriptive error instead of calling out.
ORS_API_KEY: str = os.getenv("ORS_API_KEY", "")
ORS_BASE_URL: str = os.getenv("ORS_BASE_URL", "https://api.openrouteservice.org")
ORS_PROFILE: str = os.getenv("ORS_PROFILE", "driving-car")
ORS_TIMEOUT_SECONDS: float = float(os.getenv("ORS_TIMEOUT_SECONDS", "15"))

# Duty chain defaults
DEFAULT_BREAK_MINUTES: int = int(os.getenv("DEFAULT_BREAK_MINUTES", "15"))
DEFAULT_REPOSITION_MINUTES: int = int(os.getenv("DEFAULT_REPOSITION_MINUTES", "15"))
ROSTER_TIME_STEP_MINUTES: int = int(os.getenv("ROSTER_TIME_STEP_MINUTES", "1"))

# API
CORS_ORIGINS: list[str] = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
]
