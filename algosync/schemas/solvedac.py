from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime


class ApiModel(BaseModel):
    """Base for solved.ac payloads: camelCase on the wire, unknown keys ignored."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UserInfo(ApiModel):
    handle: str
    bio: str = ""
    solved_count: int = Field(0, alias="solvedCount")
    tier: int = Field(0, alias="class")
    rating: int = 0
    rank: int = 0
    max_streak: int = Field(0, alias="maxStreak")
    joined_at: Optional[datetime] = Field(None, alias="joinedAt")


class ProblemSummary(ApiModel):
    problem_id: int = Field(..., alias="problemId")
    title_ko: str = Field("", alias="titleKo")
    level: int = 0


class Submission(ApiModel):
    submission_id: int = Field(..., alias="submissionId")
    problem: Optional[ProblemSummary] = None
    timestamp: Optional[datetime] = None
    result: str = ""
    language: str = ""
    code_length: int = Field(0, alias="codeLength")
    runtime: Optional[int] = None
    memory: Optional[int] = None


class SubmissionList(ApiModel):
    """One page of a user's submissions."""
    count: int = 0
    items: List[Submission] = Field(default_factory=list)


class ProblemInfo(ApiModel):
    problem_id: int = Field(..., alias="problemId")
    title_ko: str = Field("", alias="titleKo")
    level: int = 0
    accepted_user_count: int = Field(0, alias="acceptedUserCount")
    average_tries: float = Field(0.0, alias="averageTries")
    metadata: Dict[str, Any] = Field(default_factory=dict)
