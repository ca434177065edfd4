from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

HEX_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}){1,2}$"


class StoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    era_or_culture: Optional[str] = Field(default=None, alias="ERA_OR_CULTURE")
    story_or_character: Optional[str] = Field(default=None, alias="STORY_OR_CHARACTER")
    hook_style: Optional[str] = Field(default=None, alias="hookStyle")
    darkness_level: Optional[str] = Field(default=None, alias="darknessLevel")
    dialogue_density: Optional[str] = Field(default=None, alias="dialogueDensity")
    moral_explicitness: Optional[str] = Field(default=None, alias="moralExplicitness")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class StoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    pages: List[str] = []
    image_paths: List[str] = Field(default_factory=list, alias="imagePaths")
    text_color: str = Field(alias="textColor")
    background_color: str = Field(alias="backgroundColor")
    model: str
    session_id: str = Field(alias="sessionId")


class RerenderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pages: Optional[List[str]] = None
    title: Optional[str] = None
    font_family: Optional[str] = Field(default=None, alias="fontFamily", max_length=120)
    font_color: Optional[str] = Field(default=None, alias="fontColor", pattern=HEX_COLOR_PATTERN)
    background_color: Optional[str] = Field(default=None, alias="backgroundColor", pattern=HEX_COLOR_PATTERN)
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ImagesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_paths: List[str] = Field(default_factory=list, alias="imagePaths")
    session_id: str = Field(alias="sessionId")


class EmailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    image_paths: Optional[List[str]] = Field(default=None, alias="imagePaths")
    era_or_culture: Optional[str] = Field(default=None, alias="ERA_OR_CULTURE")
    story_or_character: Optional[str] = Field(default=None, alias="STORY_OR_CHARACTER")


class InstagramRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_paths: Optional[List[str]] = Field(default=None, alias="imagePaths")
    caption: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class SuccessResponse(BaseModel):
    success: bool = True
    result: Optional[Any] = None
