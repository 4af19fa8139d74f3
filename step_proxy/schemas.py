"""Pydantic models for the OpenAI-compatible surface."""
from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class URLRef(BaseModel):
    model_config = ConfigDict(extra="allow")
    url: str


class TextPart(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: Literal["text"] = "text"
    text: str = ""


class FilePart(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: Literal["file"] = "file"
    file_url: URLRef


class ImagePart(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: Literal["image_url"] = "image_url"
    image_url: URLRef


ContentPart = Annotated[Union[TextPart, FilePart, ImagePart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")
    role: str = "user"
    content: Union[str, List[ContentPart]] = ""

    def has_attachments(self) -> bool:
        return isinstance(self.content, list) and any(
            isinstance(part, (FilePart, ImagePart)) for part in self.content
        )


class ChatCompletionsRequest(BaseModel):
    model_config = ConfigDict(extra="allow")
    model: Optional[str] = "step"
    messages: List[ChatMessage] = Field(min_length=1)
    stream: Optional[bool] = False
    use_search: Optional[bool] = True


class ChatResponseMessage(BaseModel):
    role: str
    content: str = ""


class Choice(BaseModel):
    index: int
    message: ChatResponseMessage
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


PLACEHOLDER_USAGE = Usage(prompt_tokens=1, completion_tokens=1, total_tokens=2)


class ChatCompletionsResponse(BaseModel):
    id: str
    model: str
    object: str = "chat.completion"
    choices: List[Choice]
    usage: Usage
    created: int


class ModelsList(BaseModel):
    object: str = "list"
    data: List[dict]


class TokenCheckRequest(BaseModel):
    token: str


class TokenCheckResponse(BaseModel):
    live: bool
