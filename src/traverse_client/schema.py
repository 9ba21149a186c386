from __future__ import annotations

from typing import List, Literal, Optional, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, ValidationError


class ReleaseAssetDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    browser_download_url: str
    size: Optional[int] = None
    digest: Optional[str] = None


class ReleaseDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag_name: str
    name: Optional[str] = None
    draft: bool = False
    prerelease: bool = False
    assets: List[ReleaseAssetDTO] = []


class DiagramDataDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dot: Optional[str] = None
    mermaid: Optional[str] = None


class CommandResultDTO(BaseModel):
    """Raw server reply; ``data`` and ``diagram`` are both optional on the wire."""

    model_config = ConfigDict(extra="ignore")

    success: bool = False
    data: Optional[DiagramDataDTO] = None
    diagram: Optional[str] = None


class MultiFormatResult(BaseModel):
    kind: Literal["multi"] = "multi"
    success: bool
    dot: Optional[str] = None
    mermaid: Optional[str] = None


class LegacyResult(BaseModel):
    kind: Literal["legacy"] = "legacy"
    success: bool
    diagram: str


class EmptyResult(BaseModel):
    kind: Literal["empty"] = "empty"
    success: bool
    reason: str = ""


CommandResult: TypeAlias = Union[MultiFormatResult, LegacyResult, EmptyResult]


def parse_command_result(payload: object) -> CommandResult:
    if not isinstance(payload, dict):
        return EmptyResult(success=False, reason=f"unexpected result type {type(payload).__name__}")
    try:
        raw = CommandResultDTO.model_validate(payload)
    except ValidationError as exc:
        return EmptyResult(success=False, reason=f"invalid result payload: {exc.error_count()} error(s)")
    if raw.data is not None:
        return MultiFormatResult(
            success=raw.success,
            dot=raw.data.dot or None,
            mermaid=raw.data.mermaid or None,
        )
    if raw.diagram:
        return LegacyResult(success=raw.success, diagram=raw.diagram)
    return EmptyResult(success=raw.success)
