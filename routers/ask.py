from fastapi import APIRouter, Depends, HTTPException, status
import logging

import schemas
from routers.utils import get_assembler
from services.context_assembler import ContextAssembler, QuestionRequest
from services.errors import LLMServiceError
from services.tokenization import ConversationTurn

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=schemas.AskResponse)
async def ask_question(
    request: schemas.AskRequest,
    assembler: ContextAssembler = Depends(get_assembler)
):
    """Answer a financial question with tier-gated market context and the user's profile"""
    question = QuestionRequest(
        question=request.question,
        tier=request.tier,
        user_id=request.user_id,
        is_demo=request.is_demo,
        demo_session_id=request.demo_session_id,
        session_id=request.session_id,
        history=[
            ConversationTurn(question=turn.question, answer=turn.answer)
            for turn in request.conversation_history
        ],
    )

    try:
        result = await assembler.answer_question(question)
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LLMServiceError as e:
        logger.error(f"[ask] LLM failure for tier {request.tier.value}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="The AI service is temporarily unavailable. Please try again."
        )

    return schemas.AskResponse(
        answer=result.answer,
        tier=result.tier,
        market_context_used=result.market_context_used,
        degraded_providers=result.degraded_providers,
        stale_providers=result.stale_providers,
        upgrade_suggestions=result.upgrade_suggestions,
        limitations=result.limitations,
        profile_available=result.profile_available,
    )
