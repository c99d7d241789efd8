"""
Structuring — raw script text → ParsedScene.

Remote path: one JSON-mode chat completion with a fixed instruction.
Local path: speaker-cue heuristics, used when the job has no AI consent.
Both outputs go through the same local validation; the model output is
never trusted as-is (orders are renumbered, characters self-heal).
"""
import re
import json
import logging
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate
from scene_import.errors import StructuringError, ImportTimeoutError, is_timeout
from scene_import.states.state import ParsedScene, DraftLine
from scene_import.tools.ocr_tools import format_ai_error, message_text

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Imported scene"

_STRUCTURE_PROMPT = ChatPromptTemplate.from_messages([
    ("system",
     "You are an expert in theatre texts and scripts. "
     "You reply with valid JSON only, without any additional text."),
    ("human",
     "Analyse the following text — a theatre scene excerpt, a script or a dialogue — and extract:\n"
     "1. the scene title (invent a fitting one if absent)\n"
     "2. the author, if mentioned\n"
     "3. the characters who speak\n"
     "4. every line of dialogue, in order of appearance\n\n"
     "Return ONLY a JSON object with exactly this structure:\n"
     '{{"title": "scene title", "author": "author name or null", '
     '"characters": ["Character 1", "Character 2"], '
     '"lines": [{{"characterName": "Character 1", "text": "line text", "order": 1}}]}}\n\n'
     "Rules:\n"
     "- \"title\" is mandatory\n"
     "- \"author\" may be null\n"
     "- \"characters\" lists every unique speaking character\n"
     "- each line has a unique sequential \"order\" (1, 2, 3...)\n"
     "- each line's \"characterName\" must appear in \"characters\"\n"
     "- without clear dialogue markup, look for common patterns "
     "(upper-case names, colons, names alone on a line)\n\n"
     "Text to analyse:\n\n{text}"),
])


# ── Remote structuring ───────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _parse_json_payload(content: str) -> dict:
    cleaned = _FENCE_RE.sub("", content.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise StructuringError("The AI response is not valid JSON", details=str(e)) from e
    if not isinstance(payload, dict):
        raise StructuringError("The AI response is not a JSON object")
    return payload


def request_structure(model: BaseChatModel, text: str) -> dict:
    try:
        response = model.invoke(_STRUCTURE_PROMPT.format_messages(text=text))
    except Exception as e:
        logger.error("Structuring call failed: %s", e)
        if is_timeout(e):
            raise ImportTimeoutError("The structuring service timed out", details=format_ai_error(e)) from e
        status = getattr(e, "status_code", None)
        if status == 401:
            raise StructuringError("Invalid AI provider API key", details=format_ai_error(e)) from e
        if status == 429:
            raise StructuringError("AI provider rate limit reached. Try again later.", details=format_ai_error(e)) from e
        raise StructuringError(f"Structuring failed: {format_ai_error(e)}") from e

    content = message_text(response.content)
    if not content.strip():
        raise StructuringError("Empty response from the structuring service")
    return _parse_json_payload(content)


# ── Local heuristic structuring ──────────────────────────────────────────────

_UPPER = "A-ZÀ-ÖØ-Þ"
_WORD = "A-Za-zÀ-ÖØ-öø-ÿ'’\\-"
_NAME = rf"[{_UPPER}][{_WORD}]*(?:\s[{_WORD}]+){{0,3}}"
_CAPS_NAME = rf"[{_UPPER}][{_UPPER}'’\-]+(?:\s[{_UPPER}'’\-]+){{0,3}}"

INLINE_CUE_RE = re.compile(rf"^\s*({_NAME})\s*[:：]\s*(.+)$")
DOTTED_CUE_RE = re.compile(rf"^\s*({_CAPS_NAME})\s*\.\s+(.+)$")
STANDALONE_CUE_RE = re.compile(rf"^\s*({_CAPS_NAME})\s*[.:：]?\s*$")
HEADING_RE = re.compile(r"^\s*(ACTE|ACT|SC[ÈE]NE)\b", re.IGNORECASE)
AUTHOR_RE = re.compile(r"^\s*(?:by|par|author\s*:|auteur\s*:)\s*(.+)$", re.IGNORECASE)
DIRECTION_RE = re.compile(r"^\s*[\(\[].*[\)\]]\s*$")


def _match_inline_cue(line: str) -> Optional[tuple[str, str]]:
    for pattern in (DOTTED_CUE_RE, INLINE_CUE_RE):
        match = pattern.match(line)
        if match:
            return match.group(1).strip(), match.group(2).strip()
    return None


def heuristic_structure(text: str) -> dict:
    """
    Rule-based fallback recognising the usual script layouts:
        ALCESTE: text        Alceste : text        ALCESTE. text
        ALCESTE              (name alone, text on the following lines)
    The first non-cue line is taken as the title; a following "by X"/"par X" as the author.
    """
    raw_lines = [l.rstrip() for l in text.splitlines()]
    title: Optional[str] = None
    author: Optional[str] = None
    lines: list[dict] = []
    speaker: Optional[str] = None
    buffer: list[str] = []

    def flush():
        nonlocal buffer
        if speaker and buffer:
            lines.append({"characterName": speaker, "text": " ".join(buffer), "order": len(lines) + 1})
        buffer = []

    for line in raw_lines:
        stripped = line.strip()
        if not stripped:
            flush()
            continue

        if title is None and not lines and speaker is None:
            if _match_inline_cue(stripped) is None:
                title = stripped
                continue
        if author is None and not lines and speaker is None:
            author_match = AUTHOR_RE.match(stripped)
            if author_match:
                author = author_match.group(1).strip()
                continue

        if HEADING_RE.match(stripped) or DIRECTION_RE.match(stripped):
            continue

        cue = _match_inline_cue(stripped)
        if cue:
            flush()
            speaker, first_text = cue
            buffer = [first_text]
            continue

        standalone = STANDALONE_CUE_RE.match(stripped)
        if standalone:
            flush()
            speaker = standalone.group(1).strip()
            continue

        if speaker:
            buffer.append(stripped)

    flush()
    characters = list(dict.fromkeys(l["characterName"] for l in lines))
    logger.info("Heuristic structuring: %d lines, %d characters", len(lines), len(characters))
    return {"title": title or DEFAULT_TITLE, "author": author, "characters": characters, "lines": lines}


# ── Validation ───────────────────────────────────────────────────────────────

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_scene(payload: dict) -> ParsedScene:
    """
    Validate a raw structured payload and enforce the scene invariants:
    non-empty title, dense 1..N orders, every speaking character listed.
    """
    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise StructuringError("The title is missing or invalid in the AI response")

    declared = payload.get("characters", [])
    if declared is None:
        declared = []
    if not isinstance(declared, list):
        raise StructuringError("Characters must be a list")

    raw_lines = payload.get("lines")
    if not isinstance(raw_lines, list):
        raise StructuringError("Lines must be a list")

    kept: list[DraftLine] = []
    for entry in raw_lines:
        if not isinstance(entry, dict):
            continue
        name, text, order = entry.get("characterName"), entry.get("text"), entry.get("order")
        if not isinstance(name, str) or not name.strip():
            continue
        if not isinstance(text, str) or not text.strip():
            continue
        if not _is_number(order):
            continue
        kept.append(DraftLine(character_name=name.strip(), text=text.strip(), order=len(kept) + 1))

    if not kept:
        raise StructuringError("No valid dialogue line was found in the text")

    names = [c.strip() for c in declared if isinstance(c, str) and c.strip()]
    names.extend(line.character_name for line in kept)
    characters = list(dict.fromkeys(names))
    if not characters:
        raise StructuringError("No character could be identified")

    author = payload.get("author")
    author = author.strip() if isinstance(author, str) and author.strip() else None

    return ParsedScene(title=title.strip(), author=author, characters=characters, lines=kept)


def structure_scene(
    text: str,
    model: Optional[BaseChatModel],
    consent_to_ai: bool,
    allow_heuristic: bool = True,
) -> ParsedScene:
    if not text or not text.strip():
        raise StructuringError("The text to structure is empty")

    if consent_to_ai and model is not None:
        payload = request_structure(model, text)
        source = "remote"
    elif allow_heuristic:
        payload = heuristic_structure(text)
        source = "heuristic"
    elif not consent_to_ai:
        raise StructuringError("Structuring requires consent to third-party AI processing")
    else:
        raise StructuringError("No structuring service configured")

    scene = normalize_scene(payload)
    logger.info(
        "Structured scene '%s' via %s: %d characters, %d lines",
        scene.title, source, len(scene.characters), len(scene.lines),
    )
    return scene
