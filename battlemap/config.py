# battlemap/config.py
# Paths, constants, environment overrides, logging, LAN IP detection

import os
import sys
import logging
import re
import socket

# --- PyInstaller / dev path detection ---
if getattr(sys, 'frozen', False):
    BUNDLE_DIR = sys._MEIPASS
    APP_ROOT = os.path.dirname(sys.executable)
else:
    BUNDLE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    APP_ROOT = BUNDLE_DIR

# --- Folder paths ---
DATA_DIR = os.environ.get('BATTLEMAP_DATA_DIR', APP_ROOT)
UPLOADS_FOLDER = os.path.join(DATA_DIR, 'uploads')
ADVENTURES_DB_PATH = os.path.join(DATA_DIR, 'adventures.db')

# --- Server ---
PORT = int(os.environ.get('BATTLEMAP_PORT', '5000'))
HOST_PASSWORD = os.environ.get('BATTLEMAP_HOST_PASSWORD') or None
SESSION_ID_REGEX = re.compile(r'^[a-zA-Z0-9_-]{1,50}$')
ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp'}

# --- Fog of war ---
# New maps start either fully revealed or fully hidden.
FOG_POLICY_REVEALED = 'revealed'
FOG_POLICY_HIDDEN = 'hidden'
DEFAULT_FOG_POLICY = os.environ.get('BATTLEMAP_DEFAULT_FOG', FOG_POLICY_REVEALED).strip().lower()
if DEFAULT_FOG_POLICY not in (FOG_POLICY_REVEALED, FOG_POLICY_HIDDEN):
    DEFAULT_FOG_POLICY = FOG_POLICY_REVEALED

MASK_SOFT_CAP = 5 * 1024 * 1024
MASK_HARD_CAP = 10 * 1024 * 1024
MASK_MIN_RECT_SIZE = 5
DEFAULT_BRUSH_WIDTH = 50
HOST_FOG_OPACITY = 0.8
OBSERVER_FOG_OPACITY = 1.0

# --- Camera ---
MIN_ZOOM = 0.1
MAX_ZOOM = 5.0
WHEEL_ZOOM_IN = 1.1
WHEEL_ZOOM_OUT = 0.9
FIT_IMAGE_PADDING = 0.9
DEFAULT_LABEL_FONT_SIZE = 14
MIN_LABEL_FONT_SIZE = 8
MAX_LABEL_FONT_SIZE = 48
DEFAULT_VIEWPORT = (1920, 1080)

# --- Upload pipeline ---
SCALING_TARGETS = {'fullhd': (1920, 1080), '4k': (4096, 2160)}
ALLOWED_ROTATIONS = (0, 90, 180, 270)

# --- Logging ---
LOG_LEVEL = os.environ.get('BATTLEMAP_LOG_LEVEL', 'DEBUG').upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.DEBUG), format='%(asctime)s - %(levelname)s - %(message)s')


def ensure_folders(uploads_folder=None, db_path=None):
    """Create the writable data folders if they are missing."""
    os.makedirs(uploads_folder or UPLOADS_FOLDER, exist_ok=True)
    db_dir = os.path.dirname(db_path or ADVENTURES_DB_PATH)
    if db_dir: os.makedirs(db_dir, exist_ok=True)


def valid_session_id(session_id):
    return bool(session_id) and isinstance(session_id, str) and bool(SESSION_ID_REGEX.match(session_id))


# --- LAN IP Detection ---
def get_lan_ip():
    """Return the machine's LAN IP address (best-effort)."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(0.5)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"
