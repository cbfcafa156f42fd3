"""Q&A REST endpoints.

Endpoints:
    GET    /api/qa/{session_id}/questions      - List questions with tallies
    POST   /api/qa/{session_id}/questions      - Submit a question
    POST   /api/qa/questions/{question_id}/vote    - Vote (toggle / replace)
    POST   /api/qa/questions/{question_id}/answer  - Answer (speaker/admin)
    GET    /api/qa/{session_id}/categories     - Per-category totals
    DELETE /api/qa/questions/{question_id}     - Delete (author, speaker, admin)
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.auth.dependencies import get_current_user
from app.realtime import get_hub
from app.realtime.errors import RealtimeError, http_exception
from app.realtime.events import AnswerIn, QuestionIn, VoteIn
from app.realtime.models import ConnectionIdentity
from app.store.schemas import VoteDirection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/qa", tags=["qa"])


class QuestionRequest(BaseModel):
    question: str
    category: Optional[str] = None
    isAnonymous: bool = False


class VoteRequest(BaseModel):
    voteType: VoteDirection


class AnswerRequest(BaseModel):
    answer: str


_STATUS_FILTER = {"all": None, "answered": True, "unanswered": False}


@router.get("/{session_id}/questions")
async def list_questions(
    session_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = Query(None),
    status: Literal["all", "answered", "unanswered"] = Query("all"),
    sortBy: Literal["newest", "oldest", "popular"] = Query("newest"),
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        return await get_hub().relay.list_questions(
            user,
            session_id,
            category=category,
            answered=_STATUS_FILTER[status],
            sort_by=sortBy,
            page=page,
            limit=limit,
        )
    except RealtimeError as e:
        raise http_exception(e)


@router.post("/{session_id}/questions", status_code=201)
async def submit_question(
    session_id: str,
    body: QuestionRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        question = await get_hub().relay.submit_question(
            user,
            QuestionIn(
                sessionId=session_id,
                question=body.question,
                category=body.category,
                isAnonymous=body.isAnonymous,
            ),
        )
    except RealtimeError as e:
        raise http_exception(e)
    return {"message": "Question submitted successfully", "question": question}


@router.post("/questions/{question_id}/vote")
async def vote_question(
    question_id: str,
    body: VoteRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    """Same direction twice withdraws the vote; the other direction replaces it."""
    try:
        update = await get_hub().relay.vote_question(
            user, VoteIn(questionId=question_id, voteType=body.voteType)
        )
    except RealtimeError as e:
        raise http_exception(e)
    return {
        "message": "Vote recorded",
        "upvotes": update["upvotes"],
        "downvotes": update["downvotes"],
        "netVotes": update["netVotes"],
        "userVote": update["voteUpdate"]["voteType"],
    }


@router.post("/questions/{question_id}/answer")
async def answer_question(
    question_id: str,
    body: AnswerRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        answer = await get_hub().relay.answer_question(
            user, AnswerIn(questionId=question_id, answer=body.answer)
        )
    except RealtimeError as e:
        raise http_exception(e)
    return {"message": "Question answered successfully", "answer": answer}


@router.get("/{session_id}/categories")
async def question_categories(
    session_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        categories = await get_hub().relay.categories(user, session_id)
    except RealtimeError as e:
        raise http_exception(e)
    return {"categories": categories}


@router.delete("/questions/{question_id}")
async def delete_question(
    question_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        await get_hub().relay.delete_question(user, question_id)
    except RealtimeError as e:
        raise http_exception(e)
    return {"message": "Question deleted successfully"}
