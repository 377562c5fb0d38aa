from pydantic import BaseModel, ConfigDict, Field

from party.models import GameMode
from party.scoring import QUIZ_BONUS_XP
from party.service import MAX_TARGET_VALUE


class CreatePartyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    game_mode: GameMode
    target_value: int = Field(gt=0, le=MAX_TARGET_VALUE, strict=True)
    location_id: str | None = Field(default=None, max_length=100)
    location_name: str | None = Field(default=None, max_length=200)


class CatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    creature_id: str = Field(min_length=1, max_length=100)


class QuizBonusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: int = Field(default=QUIZ_BONUS_XP, gt=0, le=1000, strict=True)
