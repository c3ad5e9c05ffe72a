from fastapi import APIRouter, Depends, HTTPException, status
import logging

import schemas
from routers.utils import get_container, get_profile_manager
from services.container import ServiceContainer
from services.errors import ProfileDecryptionError
from services.profile_manager import ProfileManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/profile/{user_id}", response_model=schemas.ProfileResponse)
def read_profile(
    user_id: str,
    profile_manager: ProfileManager = Depends(get_profile_manager)
):
    """Return the user's decrypted profile"""
    try:
        profile = profile_manager.get_profile(user_id)
    except ProfileDecryptionError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return schemas.ProfileResponse(
        user_id=profile.user_id,
        profile_text=profile.profile_text,
        conversation_count=profile.conversation_count,
        last_updated=profile.last_updated,
    )


@router.delete("/profile/{user_id}", response_model=schemas.ProfileDeleteResponse)
def delete_profile(
    user_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """Logically delete the user's profile"""
    deleted = container.profile_manager.delete_profile(user_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    if container.vault_store is not None:
        # User data changed; no session may keep tokens minted from it
        container.vault_store.invalidate_all()
    return schemas.ProfileDeleteResponse(user_id=user_id, deleted=True)


@router.post("/sessions/{session_id}/end", response_model=schemas.SessionEndResponse)
def end_session(
    session_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """End a conversation session: drop its token vault and any demo history"""
    vault_cleared = False
    if container.vault_store is not None:
        vault_cleared = container.vault_store.invalidate(session_id)
    deleted = container.conversation_manager.end_demo_session(session_id)
    logger.info(f"[end_session] session={session_id} vault_cleared={vault_cleared} demo_turns_deleted={deleted}")
    return schemas.SessionEndResponse(
        session_id=session_id,
        vault_cleared=vault_cleared,
        conversations_deleted=deleted,
    )
