from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel


class ItemInfo(BaseModel):
    name: str
    type: Literal['directory', 'file']
    size: Optional[str] = None
    modified: str
    path: str


class ApiResponse(BaseModel):
    ok: bool
    message: str
    data: Optional[Any] = None


class FileActionRequest(BaseModel):
    path: str = ''
    new_name: Optional[str] = None


class MkdirRequest(BaseModel):
    path: str = ''
    name: str = ''


class MoveRequest(BaseModel):
    source: str = ''
    target: Optional[str] = None
