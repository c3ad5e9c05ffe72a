"""
Migration 002: Rotate the profile encryption key
Re-encrypts every profile record from its current key to
NEW_PROFILE_ENCRYPTION_KEY. The version written defaults to the current
PROFILE_ENCRYPTION_KEY_VERSION + 1 unless NEW_PROFILE_ENCRYPTION_KEY_VERSION
is set. Records already at the new version are skipped, so the script can
be re-run after an interruption.

Rollout:
    1. Deploy with the new key added to PROFILE_ENCRYPTION_KEYRING
       ("<new version>:<new key>") so running servers can read rotated records.
    2. Run this script.
    3. Deploy with PROFILE_ENCRYPTION_KEY / PROFILE_ENCRYPTION_KEY_VERSION set to
       the new key, keeping the old one in PROFILE_ENCRYPTION_KEYRING until a
       run reports no failures.

Usage:
    python -m migrations.002_rotate_profile_encryption_key
    OR
    cd migrations && python 002_rotate_profile_encryption_key.py
"""
import os
import sys
from pathlib import Path

# Add parent directory to path to import database module
sys.path.append(str(Path(__file__).parent.parent))

from database import SessionLocal
from services.errors import EncryptionKeyError
from services.profile_encryption import ProfileEncryptionService, load_keyring, validate_key
from services.profile_manager import ProfileManager

def migrate():
    """Re-encrypt all profile records under the new key"""
    new_key = os.getenv("NEW_PROFILE_ENCRYPTION_KEY")
    if not new_key:
        print("ERROR: NEW_PROFILE_ENCRYPTION_KEY is not set")
        return
    if not validate_key(new_key):
        print("ERROR: NEW_PROFILE_ENCRYPTION_KEY must be a base64 encoded 32-byte random key")
        return

    try:
        current = ProfileEncryptionService()
        keyring = load_keyring()
        new_version = int(os.getenv("NEW_PROFILE_ENCRYPTION_KEY_VERSION", str(current.key_version + 1)))
        new_service = ProfileEncryptionService(key=new_key, key_version=new_version)
    except (EncryptionKeyError, ValueError) as e:
        print(f"ERROR: Encryption key is not usable: {e}")
        return

    try:
        manager = ProfileManager(session_factory=SessionLocal, encryption_service=current, keyring=keyring)
        report = manager.rotate_encryption_key(new_service)
        if report.complete:
            print(f"SUCCESS: Rotated {report.rotated} profile records to key version {new_version} "
                  f"({report.skipped} already current)")
        else:
            print(f"WARNING: Rotated {report.rotated} records; {len(report.failed)} could not be decrypted. "
                  f"Keep the old key in PROFILE_ENCRYPTION_KEYRING, check the logs and re-run")
    except Exception as e:
        print(f"ERROR: Key rotation failed: {e}")

if __name__ == "__main__":
    migrate()
