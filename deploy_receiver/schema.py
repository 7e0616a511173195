from __future__ import annotations

from pydantic import BaseModel, Field


class DeployRequest(BaseModel):
    reason: str = Field("", max_length=200)
    url: str = Field("", max_length=2000)


class ContentFile(BaseModel):
    content: str
    sha: str
