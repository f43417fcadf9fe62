# Shared configuration and helpers for all seed modules

import os
import uuid
from pathlib import Path
from datetime import datetime, timezone
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
_script_dir = Path(__file__).resolve().parent.parent          # server/
for _env_path in [_script_dir / ".env", _script_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path)
        break
else:
    load_dotenv()

# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB  = os.getenv("MONGODB_DB", "civiguard")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def new_id() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def geojson_point(lat: float, lng: float) -> dict:
    """Return the stored GeoJSON form of a ``{lat, lng}`` pair."""
    return {"type": "Point", "coordinates": [lng, lat]}
