"""
Conversation Manager Service
Stores question/answer turns and serves recent history for the prompt
"""
from typing import List, Optional
import logging

import models
from database import SessionLocal
from services.tokenization import ConversationTurn

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_TURNS = 5


class ConversationManager:
    """Service for persisting conversation turns"""

    def __init__(self, session_factory=SessionLocal):
        """
        Initialize conversation manager.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
        """
        self.session_factory = session_factory

    def add_turn(
        self,
        question: str,
        answer: str,
        tier: str,
        user_id: Optional[str] = None,
        demo_session_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """
        Record one question/answer turn.

        Args:
            question: User question (real values)
            answer: Detokenized answer
            tier: Tier the answer was produced under
            user_id: Owner, for authenticated requests
            demo_session_id: Owner, for demo requests
            session_id: Conversation session the turn belongs to

        Returns:
            The new conversation_id
        """
        if not user_id and not demo_session_id:
            raise ValueError("Either user_id or demo_session_id is required")

        db = self.session_factory()
        try:
            conversation = models.Conversation(
                user_id=user_id,
                demo_session_id=demo_session_id,
                session_id=session_id,
                question=question,
                answer=answer,
                tier=tier,
            )
            db.add(conversation)
            db.commit()
            db.refresh(conversation)
            return conversation.conversation_id
        finally:
            db.close()

    def recent_turns(
        self,
        user_id: Optional[str] = None,
        demo_session_id: Optional[str] = None,
        limit: int = DEFAULT_HISTORY_TURNS,
    ) -> List[ConversationTurn]:
        """Most recent turns for the owner, oldest first."""
        if not user_id and not demo_session_id:
            return []

        db = self.session_factory()
        try:
            query = db.query(models.Conversation)
            if user_id:
                query = query.filter(models.Conversation.user_id == user_id)
            else:
                query = query.filter(models.Conversation.demo_session_id == demo_session_id)
            rows = query.order_by(
                models.Conversation.created_at.desc(),
                models.Conversation.conversation_id.desc()
            ).limit(limit).all()
            return [
                ConversationTurn(question=row.question, answer=row.answer, created_at=row.created_at)
                for row in reversed(rows)
            ]
        finally:
            db.close()

    def end_demo_session(self, demo_session_id: str) -> int:
        """
        Delete every turn stored for a demo session.

        Returns:
            Number of turns deleted
        """
        db = self.session_factory()
        try:
            deleted = db.query(models.Conversation).filter(
                models.Conversation.demo_session_id == demo_session_id
            ).delete(synchronize_session=False)
            db.commit()
            logger.info(f"Ended demo session {demo_session_id}, removed {deleted} turns")
            return deleted
        finally:
            db.close()
