from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from quizgen.core.auth import create_token
from quizgen.core.database import get_db
from quizgen.models.orm import User

router = APIRouter()


class MockLogin(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    username: str


@router.post("/mock-login", response_model=TokenResponse)
def mock_login(payload: MockLogin, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(User.username == payload.username))
    if user is None:
        user = User(username=payload.username, email=payload.email)
        db.add(user)
        db.commit()
        db.refresh(user)
    token = create_token(user.id, user.username)
    return TokenResponse(access_token=token, user_id=user.id, username=user.username)
