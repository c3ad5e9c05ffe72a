"""
Migration 001: Encrypt legacy plaintext profiles
Moves every profile still stored in user_profile.profile_text into
encrypted_profile_data and clears the plaintext column.
Requires PROFILE_ENCRYPTION_KEY to be set.

Usage:
    python -m migrations.001_encrypt_legacy_profiles
    OR
    cd migrations && python 001_encrypt_legacy_profiles.py
"""
import sys
from pathlib import Path

# Add parent directory to path to import database module
sys.path.append(str(Path(__file__).parent.parent))

import models
from database import engine, SessionLocal
from services.errors import EncryptionKeyError
from services.profile_manager import ProfileManager

def migrate():
    """Encrypt all legacy plaintext profiles"""
    try:
        models.Base.metadata.create_all(bind=engine)
        manager = ProfileManager(session_factory=SessionLocal)
        migrated = manager.migrate_legacy_profiles()
        print(f"SUCCESS: Encrypted {migrated} legacy profiles")
    except EncryptionKeyError as e:
        print(f"ERROR: Encryption key is not usable: {e}")
    except Exception as e:
        print(f"ERROR: Failed to encrypt legacy profiles: {e}")

if __name__ == "__main__":
    migrate()
