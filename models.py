from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base

class User(Base):
    __tablename__ = "user"

    user_id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=True, index=True)
    tier = Column(String, nullable=False, default="starter")  # starter, standard, premium
    is_deleted = Column(Boolean, nullable=False, default=False)  # Soft delete flag
    created = Column(DateTime, nullable=False, server_default=func.now())
    updated = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    profile = relationship("UserProfile", back_populates="user", uselist=False)
    conversations = relationship("Conversation", back_populates="user")


class UserProfile(Base):
    __tablename__ = "user_profile"

    profile_id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("user.user_id"), unique=True, nullable=False, index=True)
    profile_hash = Column(String, unique=True, nullable=False, index=True)  # Random, links to the encrypted record
    profile_text = Column(Text, nullable=True)  # Legacy plaintext, cleared once migrated
    is_active = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    conversation_count = Column(Integer, nullable=False, default=0)
    created = Column(DateTime, nullable=False, server_default=func.now())
    last_updated = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="profile")
    encrypted_data = relationship(
        "EncryptedProfileData",
        primaryjoin="UserProfile.profile_hash == foreign(EncryptedProfileData.profile_hash)",
        uselist=False,
        viewonly=True,
    )


class EncryptedProfileData(Base):
    __tablename__ = "encrypted_profile_data"

    profile_hash = Column(String, primary_key=True, index=True)
    encrypted_data = Column(Text, nullable=False)  # base64 AES-GCM ciphertext
    iv = Column(String, nullable=False)
    tag = Column(String, nullable=False)
    key_version = Column(Integer, nullable=False, default=1)
    algorithm = Column(String, nullable=False, default="aes-256-gcm")
    is_deleted = Column(Boolean, nullable=False, default=False)
    created = Column(DateTime, nullable=False, server_default=func.now())
    updated = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class Conversation(Base):
    __tablename__ = "conversation"

    conversation_id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("user.user_id"), nullable=True, index=True)
    demo_session_id = Column(String, nullable=True, index=True)  # Set instead of user_id in demo mode
    session_id = Column(String, nullable=True, index=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False, default="")
    tier = Column(String, nullable=False, default="starter")
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    # Relationships
    user = relationship("User", back_populates="conversations")


class MarketNewsContext(Base):
    __tablename__ = "market_news_context"

    context_id = Column(Integer, primary_key=True, index=True)
    tier = Column(String, nullable=False, index=True)  # standard, premium
    context_text = Column(Text, nullable=False)
    change_type = Column(String, nullable=False, default="auto_update")  # auto_update, manual_edit
    data_sources = Column(String, nullable=False, default="")  # Comma-separated provider names
    key_events = Column(Text, nullable=False, default="")  # One event per line
    edited_by = Column(String, nullable=True)  # Set for manual edits
    is_active = Column(Boolean, nullable=False, default=True)  # One active row per tier, older rows are history
    created = Column(DateTime, nullable=False, server_default=func.now())
