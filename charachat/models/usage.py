"""
charachat/models/usage.py

Usage metering models.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class ServiceKind(str, Enum):
    LLM_CHAT_SAFE = "LLM_CHAT_SAFE"
    LLM_CHAT_NSFW = "LLM_CHAT_NSFW"
    LLM_STORY_GENERATION_SFW = "LLM_STORY_GENERATION_SFW"
    LLM_STORY_GENERATION_NSFW = "LLM_STORY_GENERATION_NSFW"
    IMAGE_GENERATION = "IMAGE_GENERATION"
    TTS_DEFAULT = "TTS_DEFAULT"
    STT_DEFAULT = "STT_DEFAULT"


class UsageMetrics(BaseModel):
    """Measured size of one service call. STT calls pass duration_minutes in additional_metadata."""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    characters_processed: Optional[int] = None
    images_processed: Optional[int] = None
    additional_metadata: Dict[str, Any] = Field(default_factory=dict)


class UsageLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    service_type: ServiceKind
    conversation_id: Optional[str] = None
    provider_name: Optional[str] = None
    model_name: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    characters_processed: Optional[int] = None
    images_processed: Optional[int] = None
    additional_metadata: Dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    processed_at: Optional[datetime] = None
    credits_consumed: Optional[int] = None
    created_at: datetime


class ServiceCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_type: ServiceKind
    credits_per_unit: Decimal
    unit_description: str
    is_active: bool = True
