import os
from pathlib import Path

CACHE_DIR = Path(
    os.environ.get("PHOTOMIND_CACHE_DIR", Path.home() / ".cache" / "photomind")
).resolve()

DB_FILE = CACHE_DIR / "photomind.db"

# -- models --

CLIP_MODEL_NAME = os.environ.get("PHOTOMIND_CLIP_MODEL", "ViT-B-16")
CLIP_PRETRAINED = os.environ.get("PHOTOMIND_CLIP_PRETRAINED", "openai")
SEMANTIC_DIM = 512
FACE_MODEL_PACK = os.environ.get("PHOTOMIND_FACE_MODEL", "buffalo_l")
DETECTOR_INPUT_SIZE = 416  # boxes come back in this square coordinate space
FACE_CROP_SIZE = 224
DETECTION_TIMEOUT_SECONDS = 45.0

# -- detection queue / scan jobs --

MAX_CONCURRENT_TASKS = 1  # inference is not reentrant
CHECKPOINT_INTERVAL = 50  # advance last_processed_id every N photos
STALE_JOB_SECONDS = 5 * 60
PROGRESS_INTERVAL_SECONDS = 0.5
UNPROCESSED_BATCH_LIMIT = 1000

# -- clustering --

FACE_MATCH_THRESHOLD = 0.45
MAX_CLUSTER_SIZE = 100
SIMILAR_FACE_FLOOR = 0.5
MIN_NEW_PERSON_FACES = 2  # singleton clusters stay unassigned
UNNAMED_PREFIX = "Unnamed"

# -- retrieval --

KEYWORD_WEIGHT = 0.3
VECTOR_WEIGHT = 0.7
MIN_VECTOR_SIMILARITY = 0.1
MIN_COMBINED_SCORE = 0.1
FUZZY_SIMILARITY = 0.6
FUZZY_PENALTY = 0.5
KEYWORD_CANDIDATES = 100
VECTOR_CANDIDATES = 100
DEFAULT_LIMIT = 50
DEFAULT_TOP_K = 10

# -- service daemon --

SERVICE_PORT = int(os.environ.get("PHOTOMIND_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
SERVICE_PID_FILE = Path("/tmp/photomind/photomind.pid")
SERVICE_STARTUP_TIMEOUT = 60  # seconds to wait for health check
ACTIVITY_DIR = Path("/tmp/photomind")
