"""
Profile Manager
Durable, encrypted, incrementally learned user profiles
"""
import asyncio
import secrets
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy.orm import Session

import models
from database import SessionLocal
from services.errors import ProfileDecryptionError
from services.profile_encryption import EncryptedPayload, ProfileEncryptionService, rotate
from services.profile_enhancer import ProfileEnhancer
from services.profile_extractor import ProfileMerger, RuleBasedProfileMerger, merge_facts
from services.tier_gate import TierCapabilities, TierGate
from services.tokenization import ConversationTurn

logger = logging.getLogger(__name__)


@dataclass
class StoredProfile:
    user_id: str
    profile_text: str
    conversation_count: int
    last_updated: Optional[datetime]


@dataclass
class KeyRotationReport:
    rotated: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def new_profile_hash() -> str:
    # Random so the hash reveals nothing about the user id or creation time
    return f"profile_{secrets.token_hex(16)}"


def _payload(record: models.EncryptedProfileData) -> EncryptedPayload:
    return EncryptedPayload(
        encrypted_data=record.encrypted_data,
        iv=record.iv,
        tag=record.tag,
        key_version=record.key_version,
        algorithm=record.algorithm,
    )


class ProfileManager:
    """Reads, learns and stores user profiles; plaintext never touches the database"""

    def __init__(
        self,
        session_factory=SessionLocal,
        encryption_service: Optional[ProfileEncryptionService] = None,
        merger: Optional[ProfileMerger] = None,
        enhancer: Optional[ProfileEnhancer] = None,
        tier_gate: Optional[TierGate] = None,
        keyring: Optional[Iterable[ProfileEncryptionService]] = None,
    ):
        """
        Args:
            encryption_service: Service every write uses
            keyring: Extra decrypt-only services, one per older or upcoming key version
        """
        self.session_factory = session_factory
        self._keyring: Dict[int, ProfileEncryptionService] = {}
        for service in keyring or []:
            self._keyring[service.key_version] = service
        self.encryption_service = encryption_service or ProfileEncryptionService()
        self.merger = merger or RuleBasedProfileMerger()
        self.enhancer = enhancer or ProfileEnhancer()
        self.tier_gate = tier_gate or TierGate()
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    @property
    def encryption_service(self) -> ProfileEncryptionService:
        return self._encryption_service

    @encryption_service.setter
    def encryption_service(self, service: ProfileEncryptionService) -> None:
        self._encryption_service = service
        self._keyring[service.key_version] = service

    def _decrypt(self, record: models.EncryptedProfileData) -> str:
        service = self._keyring.get(record.key_version, self._encryption_service)
        return service.decrypt(_payload(record))

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------ rows

    def _get_profile_row(self, db: Session, user_id: str) -> Optional[models.UserProfile]:
        return db.query(models.UserProfile).filter(
            models.UserProfile.user_id == user_id,
            models.UserProfile.is_deleted == False
        ).first()

    def _ensure_profile_row(self, db: Session, user_id: str) -> models.UserProfile:
        profile = self._get_profile_row(db, user_id)
        if profile is not None:
            return profile

        user = db.query(models.User).filter(models.User.user_id == user_id).first()
        if user is None:
            # Identity is established upstream; the first request registers the id
            user = models.User(user_id=user_id)
            db.add(user)
        elif user.is_deleted:
            raise ValueError(f"User {user_id} has been deleted")

        # A logically deleted profile keeps its row; reuse it with a fresh hash
        profile = db.query(models.UserProfile).filter(models.UserProfile.user_id == user_id).first()
        if profile is None:
            profile = models.UserProfile(user_id=user_id, profile_hash=new_profile_hash())
            db.add(profile)
        else:
            profile.profile_hash = new_profile_hash()
            profile.profile_text = None
            profile.is_deleted = False
            profile.is_active = True
            profile.conversation_count = 0
        db.commit()
        db.refresh(profile)
        logger.info(f"Created profile for user {user_id}")
        return profile

    def _get_record(self, db: Session, profile_hash: str) -> Optional[models.EncryptedProfileData]:
        return db.query(models.EncryptedProfileData).filter(
            models.EncryptedProfileData.profile_hash == profile_hash,
            models.EncryptedProfileData.is_deleted == False
        ).first()

    def _write_record(self, db: Session, profile_hash: str, text: str) -> None:
        encrypted = self.encryption_service.encrypt(text)
        record = db.query(models.EncryptedProfileData).filter(
            models.EncryptedProfileData.profile_hash == profile_hash
        ).first()
        if record is None:
            record = models.EncryptedProfileData(profile_hash=profile_hash)
            db.add(record)
        record.encrypted_data = encrypted.encrypted_data
        record.iv = encrypted.iv
        record.tag = encrypted.tag
        record.key_version = encrypted.key_version
        record.algorithm = encrypted.algorithm
        record.is_deleted = False

    def _read_text(self, db: Session, profile: models.UserProfile) -> str:
        """
        Decrypt the profile, migrating a legacy plaintext column on first read.

        Raises:
            ProfileDecryptionError: If the stored record cannot be decrypted
        """
        record = self._get_record(db, profile.profile_hash)
        if record is not None:
            text = self._decrypt(record)
            if profile.profile_text:
                profile.profile_text = None
                db.commit()
            return text

        if profile.profile_text:
            text = profile.profile_text
            self._write_record(db, profile.profile_hash, text)
            profile.profile_text = None
            db.commit()
            logger.info(f"Migrated legacy plaintext profile for user {profile.user_id}")
            return text
        return ""

    # ------------------------------------------------------------------ operations

    def get_or_create_profile(self, user_id: str) -> str:
        """
        Return the user's profile plaintext, creating an empty profile when none exists.

        Raises:
            ProfileDecryptionError: If the stored record cannot be decrypted
        """
        with self._session() as db:
            profile = self._ensure_profile_row(db, user_id)
            return self._read_text(db, profile)

    def get_profile(self, user_id: str) -> Optional[StoredProfile]:
        with self._session() as db:
            profile = self._get_profile_row(db, user_id)
            if profile is None:
                return None
            return StoredProfile(
                user_id=user_id,
                profile_text=self._read_text(db, profile),
                conversation_count=profile.conversation_count,
                last_updated=profile.last_updated,
            )

    def update_profile(self, user_id: str, text: str, count_conversation: bool = False) -> None:
        """Encrypt and store ``text`` as the user's profile (fresh iv on every write)."""
        with self._session() as db:
            profile = self._ensure_profile_row(db, user_id)
            self._write_record(db, profile.profile_hash, text)
            profile.profile_text = None
            profile.last_updated = datetime.now()
            if count_conversation:
                profile.conversation_count = (profile.conversation_count or 0) + 1
            db.commit()
        logger.info(f"Stored encrypted profile for user {user_id}")

    async def update_profile_from_conversation(self, user_id: str, turn: ConversationTurn) -> bool:
        """
        Learn from one conversation turn. Serialized per user and never raises.

        Args:
            user_id: Profile owner
            turn: Question and answer just exchanged

        Returns:
            True when the profile changed and was written
        """
        try:
            async with self._lock_for(user_id):
                try:
                    old_profile = self.get_or_create_profile(user_id)
                except ProfileDecryptionError:
                    # Never overwrite a record we could not read
                    logger.error(f"Skipping profile learning for user {user_id}: stored profile unreadable")
                    return False

                new_profile = await self.merger.merge(old_profile, turn)
                if not new_profile or not new_profile.strip() or new_profile == old_profile:
                    logger.info(f"No new profile facts for user {user_id}")
                    return False

                self.update_profile(user_id, new_profile, count_conversation=True)
                return True
        except Exception as e:
            logger.error(f"Profile update failed for user {user_id}: {e.__class__.__name__}: {e}")
            return False

    async def enhance_profile_from_account_data(
        self,
        user_id: str,
        account_data: Dict[str, Any],
        capabilities: TierCapabilities,
    ) -> bool:
        """Merge account-derived insights into the profile when the tier allows enrichment."""
        if not self.tier_gate.check_profile_enrichment(capabilities):
            return False
        try:
            async with self._lock_for(user_id):
                try:
                    old_profile = self.get_or_create_profile(user_id)
                except ProfileDecryptionError:
                    logger.error(f"Skipping profile enrichment for user {user_id}: stored profile unreadable")
                    return False
                facts = self.enhancer.derive_facts(account_data)
                new_profile = merge_facts(old_profile, facts)
                if new_profile == old_profile:
                    return False
                self.update_profile(user_id, new_profile)
                return True
        except Exception as e:
            logger.error(f"Profile enrichment failed for user {user_id}: {e.__class__.__name__}: {e}")
            return False

    def rotate_encryption_key(self, new_service: ProfileEncryptionService) -> KeyRotationReport:
        """
        Re-encrypt every record under ``new_service`` and make it the write key.

        Each record is rewritten only after it was decrypted with the key for
        its own version and sealed under the new key. The previous services
        stay on the keyring, so records that could not be rotated remain
        readable and the rotation can be re-run. Records already at the new
        version are skipped.

        Returns:
            KeyRotationReport with the rotated, skipped and failed counts
        """
        report = KeyRotationReport()
        self._keyring[new_service.key_version] = new_service
        with self._session() as db:
            records = db.query(models.EncryptedProfileData).filter(
                models.EncryptedProfileData.is_deleted == False
            ).all()
            for record in records:
                if record.key_version == new_service.key_version:
                    report.skipped += 1
                    continue
                old_service = self._keyring.get(record.key_version, self._encryption_service)
                try:
                    encrypted = rotate(old_service, new_service, _payload(record))
                except ProfileDecryptionError:
                    report.failed.append(record.profile_hash)
                    logger.error(f"Could not rotate profile record {record.profile_hash} (key v{record.key_version})")
                    continue
                record.encrypted_data = encrypted.encrypted_data
                record.iv = encrypted.iv
                record.tag = encrypted.tag
                record.key_version = encrypted.key_version
                record.algorithm = encrypted.algorithm
                db.commit()
                report.rotated += 1

        self.encryption_service = new_service
        logger.info(
            f"Key rotation to v{new_service.key_version} finished: "
            f"{report.rotated} rotated, {report.skipped} skipped, {len(report.failed)} failed"
        )
        return report

    def migrate_legacy_profiles(self) -> int:
        """Encrypt every remaining legacy plaintext profile and clear the column."""
        migrated = 0
        with self._session() as db:
            profiles = db.query(models.UserProfile).filter(
                models.UserProfile.profile_text.isnot(None),
                models.UserProfile.profile_text != ""
            ).all()
            for profile in profiles:
                if self._get_record(db, profile.profile_hash) is None:
                    self._write_record(db, profile.profile_hash, profile.profile_text)
                    migrated += 1
                profile.profile_text = None
                db.commit()
        logger.info(f"Migrated {migrated} legacy profiles")
        return migrated

    def delete_profile(self, user_id: str) -> bool:
        """Logically delete the user's profile and its encrypted record."""
        with self._session() as db:
            profile = self._get_profile_row(db, user_id)
            if profile is None:
                return False
            record = self._get_record(db, profile.profile_hash)
            if record is not None:
                record.is_deleted = True
            profile.is_deleted = True
            profile.is_active = False
            profile.profile_text = None
            db.commit()
        logger.info(f"Deleted profile for user {user_id}")
        return True
