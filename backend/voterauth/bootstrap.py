"""
Set up a working directory for the verification service.

Creates the data and key directories, writes an RS256 key pair for session
tokens, initializes the identity database and downloads the MediaPipe Face
Landmarker model. Every step is skipped when its output already exists.

Usage:
    voterauth-setup
"""
import os
import urllib.request
from pathlib import Path

from .config import Config
from .services.identity_registry import IdentityStore
from .services.token_issuer import TokenIssuer

MODEL_URL = "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/latest/face_landmarker.task"


def create_directories():
    """Create the directories the configured paths live in"""
    for path in (Config.DATABASE_PATH, Config.JWT_PRIVATE_KEY_PATH, Config.JWT_PUBLIC_KEY_PATH):
        if path == ":memory:":
            continue
        directory = Path(path).parent
        directory.mkdir(parents=True, exist_ok=True)
        print(f"✓ Directory ready: {directory}")


def generate_jwt_keys() -> bool:
    """Write a fresh RSA key pair for session tokens"""
    if os.path.exists(Config.JWT_PRIVATE_KEY_PATH) and os.path.exists(Config.JWT_PUBLIC_KEY_PATH):
        print("✓ JWT keys already exist")
        return True

    issuer = TokenIssuer()
    try:
        Path(Config.JWT_PRIVATE_KEY_PATH).write_text(issuer.private_key)
        os.chmod(Config.JWT_PRIVATE_KEY_PATH, 0o600)
        Path(Config.JWT_PUBLIC_KEY_PATH).write_text(issuer.public_key)
    except OSError as e:
        print(f"✗ Failed to write JWT keys: {e}")
        return False
    print("✓ Generated JWT keys")
    return True


def initialize_database() -> bool:
    """Create the identity database schema"""
    try:
        IdentityStore(Config.DATABASE_PATH)
    except Exception as e:
        print(f"✗ Failed to initialize database: {e}")
        return False
    print(f"✓ Database ready at {Config.DATABASE_PATH}")
    return True


def download_landmarker(model_path: Path = None, url: str = MODEL_URL) -> bool:
    """Download the MediaPipe Face Landmarker model to ``model_path``"""
    model_path = Path(model_path or Config.MEDIAPIPE_MODEL_PATH)
    model_path.parent.mkdir(parents=True, exist_ok=True)

    if model_path.exists():
        print(f"✓ Model already exists at {model_path}")
        return True

    print(f"Downloading MediaPipe Face Landmarker from {url}...")

    def report_progress(block_num, block_size, total_size):
        if total_size > 0:
            percent = min(100, block_num * block_size * 100 / total_size)
            print(f"\rProgress: {percent:.1f}%", end="")

    try:
        urllib.request.urlretrieve(url, model_path, reporthook=report_progress)
    except Exception as e:
        print(f"\n✗ Download failed: {e}")
        if model_path.exists():
            model_path.unlink()
        return False

    print(f"\n✓ Model size: {model_path.stat().st_size / 1024 / 1024:.2f} MB")
    return True


def main():
    """Run all setup steps"""
    print("Setting up the voter biometric verification service...\n")

    create_directories()
    results = [
        generate_jwt_keys(),
        initialize_database(),
        download_landmarker(),
    ]

    if all(results):
        print("\n✓ Setup complete!")
        print("\nRun the server: uvicorn voterauth.main:app --reload")
    else:
        print("\n✗ Setup finished with errors (see above)")
    return 0 if all(results) else 1


if __name__ == '__main__':
    raise SystemExit(main())
