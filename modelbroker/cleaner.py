"""End-of-turn detection and response cleaning for free-text backend output.

The chat process prints plain text with no explicit event boundary, so the
end of a turn is recognized heuristically: a chunk that contains a prompt
marker or a role label means the model has finished and is waiting for input.
Once complete, the accumulated buffer still carries echoed ChatML blocks,
role labels and prompt markers, which are stripped here.
"""

import re
from typing import Iterable

IM_END = "<|im_end|>"

# Role labels and program banners the chat process echoes around a turn
USER_LABEL = "User:"
ASSISTANT_LABEL = "Assistant:"
ROLE_LABELS = (USER_LABEL, ASSISTANT_LABEL)
BANNERS = ("llama_simple_chat",)

# Bare prompt markers (a line consisting only of one of these is not content)
PROMPT_MARKERS = (">", IM_END)

# Echoed ChatML blocks: <|im_start|>role ... <|im_end|>
_ECHO_BLOCK = re.compile(
    r"<\|im_start\|>(?:system|user|assistant).*?<\|im_end\|>",
    re.DOTALL,
)

# Role/banner fragments running up to the next prompt marker on the same line
_LABEL_FRAGMENT = re.compile(r"(?:llama_simple_chat|User:|Assistant:)[^\n]*?>")


def is_terminal(chunk: str, markers: Iterable[str]) -> bool:
    """Check whether a freshly received chunk ends the turn.

    Only the new chunk is inspected, never the whole buffer, so markers that
    were already seen (e.g. an echoed prompt) don't complete a later request.
    """
    return any(marker and marker in chunk for marker in markers)


def _is_marker_line(line: str) -> bool:
    """A line that is a prompt marker, role label or banner rather than content."""
    stripped = line.strip()
    if stripped in PROMPT_MARKERS:
        return True
    return any(label in stripped for label in ROLE_LABELS + BANNERS)


def clean_response(text: str) -> str:
    """Strip protocol and echo artifacts from a completed response buffer.

    1. Drop echoed system/user/assistant ChatML blocks.
    2. Drop role-label fragments and leftover end-of-turn markers.
    3. Keep the first run of real content lines; once content has started,
       stop at the first marker-like line.
    4. Trim surrounding whitespace.
    """
    cleaned = _ECHO_BLOCK.sub("", text)
    cleaned = _LABEL_FRAGMENT.sub("", cleaned)
    cleaned = cleaned.replace(IM_END, "").strip()

    content_lines: list[str] = []
    found_content = False

    for line in cleaned.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        # "Assistant: answer" opening the turn: keep the answer, drop the label
        if not found_content and stripped.startswith(ASSISTANT_LABEL):
            remainder = stripped[len(ASSISTANT_LABEL):].strip()
            if remainder and not _is_marker_line(remainder):
                content_lines.append(remainder)
                found_content = True
            continue
        if _is_marker_line(line):
            if found_content:
                break
            continue
        content_lines.append(line.rstrip())
        found_content = True

    return "\n".join(content_lines).strip()


def truncate_at_markers(text: str, markers: Iterable[str]) -> str:
    """Remove content after markers that indicate a hallucinated next turn."""
    result = text
    for marker in markers:
        if marker and marker in result:
            result = result[:result.index(marker)]
    return result.strip()
