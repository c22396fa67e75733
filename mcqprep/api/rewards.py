"""Daily question routes: fetch today's question, submit an answer."""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from mcqprep.core.auth import get_current_user_id, get_optional_user_id
from mcqprep.features.rewards.service import (
    SubmissionIdentity,
    get_daily_question,
    get_reward_balance,
    submit_answer,
)

router = APIRouter(prefix="/api", tags=["rewards"])


class AnswerRequest(BaseModel):
    daily_question_id: int
    selected_option: str
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None


class AnswerResponse(BaseModel):
    submission_id: int
    selected_option: str
    is_correct: bool
    points_awarded: int
    total_points: Optional[int] = None
    free_month_awarded: bool


@router.get("/daily-question")
def daily_question(for_date: Optional[date] = Query(None, alias="date")):
    return get_daily_question(for_date)


@router.post("/daily-answer", response_model=AnswerResponse)
def daily_answer(body: AnswerRequest, user_id: Optional[str] = Depends(get_optional_user_id)):
    """
    Submit an answer as the authenticated user, or as a guest (name + e-mail).

    A second submission for the same question answers 409 with the first result.
    """
    identity = SubmissionIdentity(
        user_id=user_id,
        guest_name=body.guest_name,
        guest_email=body.guest_email,
    )
    return submit_answer(body.daily_question_id, identity, body.selected_option).to_dict()


@router.get("/rewards/me")
def reward_balance(user_id: str = Depends(get_current_user_id)):
    return get_reward_balance(user_id)
