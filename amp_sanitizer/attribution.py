"""
Source attribution: which plugin, theme or hook produced a piece of markup.

Two inputs, innermost first:
  1. Source-stack comments the host wrapped around its output:
       <!--amp-source-stack {"type": "plugin", "name": "gallery"}-->
       ...markup...
       <!--/amp-source-stack {"type": "plugin", "name": "gallery"}-->
     The comments enclosing a node are its innermost frames.
  2. The explicit SanitizationContext frames active for the pass.

An unresolvable frame is skipped (AttributionError, logged at debug level);
an empty Source list is a valid outcome.
"""

import json
from typing import Optional

from bs4 import Comment
from pydantic import ValidationError as PydanticValidationError

from .exceptions import AttributionError
from .logger import get_module_logger
from .schemas import Frame, SanitizationContext, Source, SourceKind

logger = get_module_logger("attribution")

SOURCE_STACK_OPEN = "amp-source-stack "
SOURCE_STACK_CLOSE = "/amp-source-stack "

# Host frame types → Source kinds
FRAME_KINDS = {
    "plugin": SourceKind.PLUGIN,
    "mu-plugin": SourceKind.PLUGIN,
    "theme": SourceKind.THEME,
    "core": SourceKind.CORE,
    "block": SourceKind.BLOCK,
    "hook": SourceKind.HOOK,
    "embed": SourceKind.EMBED,
}


def is_source_stack_comment(node) -> bool:
    return isinstance(node, Comment) and (
        node.startswith(SOURCE_STACK_OPEN) or node.startswith(SOURCE_STACK_CLOSE)
    )


def parse_source_stack_comment(comment: Comment) -> tuple[bool, Frame]:
    """
    Returns (is_closing, frame).

    Raises:
        AttributionError: If the comment payload is not a frame
    """
    closing = comment.startswith(SOURCE_STACK_CLOSE)
    payload = comment[len(SOURCE_STACK_CLOSE if closing else SOURCE_STACK_OPEN):]
    try:
        return closing, Frame.model_validate(json.loads(payload))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise AttributionError(f"Malformed source-stack comment: {e}", details={"comment": str(comment)})


class SourceAttributor:
    """Maps active frames to Sources at the moment an error is recorded."""

    def __init__(self, frame_kinds: Optional[dict] = None):
        self.frame_kinds = dict(FRAME_KINDS if frame_kinds is None else frame_kinds)

    def attribute(self, context: Optional[SanitizationContext], node=None) -> list[Source]:
        """
        Sources responsible for `node`, innermost first.

        Consecutive frames from the same source collapse into one entry.
        """
        frames = []
        if node is not None:
            frames.extend(self._enclosing_frames(node))
        if context is not None:
            frames.extend(reversed(context.frames))

        sources = []
        for frame in frames:
            try:
                source = self.resolve(frame)
            except AttributionError as e:
                logger.debug(f"Skipping frame: {e.message}")
                continue
            if sources and sources[-1] == source:
                continue
            sources.append(source)
        return sources

    def resolve(self, frame: Frame) -> Source:
        kind = self.frame_kinds.get(frame.type.lower())
        if kind is None:
            raise AttributionError(f"Unknown frame type '{frame.type}'", details=frame.model_dump())
        name = frame.name or frame.hook
        if not name:
            raise AttributionError("Frame has no name", details=frame.model_dump())
        return Source(kind=kind, name=name)

    def _enclosing_frames(self, node) -> list[Frame]:
        """Frames of the source-stack comments still open at `node`, innermost first."""
        frames = []
        depth = 0
        for previous in node.previous_elements:
            if not is_source_stack_comment(previous):
                continue
            try:
                closing, frame = parse_source_stack_comment(previous)
            except AttributionError as e:
                logger.debug(f"Skipping source-stack comment: {e.message}")
                continue
            if closing:
                depth += 1
            elif depth:
                depth -= 1
            else:
                frames.append(frame)
        return frames
