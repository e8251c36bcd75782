"""
edX tracking log field extraction
Pulls module references and child positions out of event rows, either by the
quote-delimited token layout of the exported payload text or by decoding the
payload as JSON and reading fields by name.
"""

import re
import json
import logging
from typing import Dict, Optional, Tuple, Any

logger = logging.getLogger(__name__)

BLOCK_PREFIX = "block-v1:"
VIDEO_TYPE = "video"
SEQUENTIAL_TYPE = "sequential"

_HEX32 = re.compile(r"[A-Za-z0-9]{32}")
_MODULE_KEY = re.compile(r"type@([^+@/]+)\+block@([^+@/]+)")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")

# Token positions (1-based) in the payload text split on double quotes
PROBLEM_SHOW_KEY_TOKEN = 4
GOTO_KEY_TOKEN = 18
GOTO_CHILD_TOKEN = 9
PREV_NEXT_KEY_TOKEN = 16
PREV_NEXT_CHILD_TOKEN = 13
COURSEWARE_SEQUENCE_SEGMENT = 6


class EventParser:
    """Utility helpers to extract fields from edX event rows."""

    @staticmethod
    def course_key(course_id: Any) -> Optional[str]:
        """'course-v1:Org+Course+Run' -> 'Org+Course+Run'."""
        if not isinstance(course_id, str) or not course_id:
            return None
        parts = course_id.split(":", 1)
        return parts[1] if len(parts) == 2 else parts[0]

    @staticmethod
    def block_key(course: str, module_type: str, block_id: Optional[str]) -> Optional[str]:
        if not block_id:
            return None
        return f"{BLOCK_PREFIX}{course}+type@{module_type}+block@{block_id}"

    @staticmethod
    def quoted_token(payload: Any, position: int) -> Optional[str]:
        """The n-th (1-based) piece of the payload text split on double quotes."""
        if not isinstance(payload, str):
            return None
        tokens = payload.split('"')
        if position > len(tokens):
            return None
        return tokens[position - 1]

    @staticmethod
    def path_segment(path: Any, position: int) -> Optional[str]:
        """The n-th (1-based) '/'-separated segment; a leading slash yields an empty first segment."""
        if not isinstance(path, str):
            return None
        segments = path.split("/")
        if position > len(segments):
            return None
        return segments[position - 1] or None

    @staticmethod
    def hex_id(text: Any) -> Optional[str]:
        """First run of 32 alphanumerics (edX block ids)."""
        if not isinstance(text, str):
            return None
        m = _HEX32.search(text)
        return m.group(0) if m else None

    @staticmethod
    def clean_child_ref(ref: Any) -> Optional[str]:
        if ref is None:
            return None
        if isinstance(ref, float) and ref != ref:
            return None
        cleaned = _NON_ALNUM.sub("", str(ref))
        return cleaned or None

    @staticmethod
    def split_module_key(key: Any) -> Tuple[Optional[str], Optional[str]]:
        """
        Module key -> (module_type, mod_hex_id).

        'block-v1:Org+C+R+type@video+block@0b1e...' -> ('video', '0b1e...').
        Keys that do not follow the type@/block@ layout fall back to the
        '@'-delimited positions.
        """
        if not isinstance(key, str) or not key:
            return None, None
        m = _MODULE_KEY.search(key)
        if m:
            return m.group(1), m.group(2)
        parts = key.split("@")
        if len(parts) >= 3:
            return parts[1].split("+")[0], parts[2]
        return None, None

    @staticmethod
    def decode_payload(payload: Any) -> Optional[Dict]:
        """
        Decode an event payload as a JSON object.

        Browser events carry the payload as a JSON string inside the JSON log,
        so a decoded string is decoded once more.
        """
        if isinstance(payload, dict):
            return payload
        if not isinstance(payload, str):
            return None
        s = payload.strip()
        if not s or s[0] not in '{"':
            return None
        try:
            value = json.loads(s)
            if isinstance(value, str):
                value = json.loads(value)
        except (ValueError, TypeError):
            return None
        return value if isinstance(value, dict) else None

    @staticmethod
    def is_empty_payload(payload: Any) -> bool:
        return isinstance(payload, str) and "{}" in payload

    # ─────────────────────────────────────────────
    # TYPE-SPECIFIC MODULE REFERENCES
    # ─────────────────────────────────────────────

    @staticmethod
    def problem_show_key(payload: Any, structured: bool = False) -> Optional[str]:
        if structured:
            data = EventParser.decode_payload(payload)
            if data is not None and data.get("problem"):
                return str(data["problem"])
        return EventParser.quoted_token(payload, PROBLEM_SHOW_KEY_TOKEN)

    @staticmethod
    def video_key(payload: Any, course: str, structured: bool = False) -> Optional[str]:
        source = payload
        if structured:
            data = EventParser.decode_payload(payload)
            if data is not None and isinstance(data.get("id"), str):
                source = data["id"]
        return EventParser.block_key(course, VIDEO_TYPE, EventParser.hex_id(source))

    @staticmethod
    def courseware_key(event_type: Any, course: str) -> Optional[str]:
        block_id = EventParser.path_segment(event_type, COURSEWARE_SEQUENCE_SEGMENT)
        return EventParser.block_key(course, SEQUENTIAL_TYPE, block_id)

    @staticmethod
    def navigation_ref(payload: Any, key_token: int, child_token: int,
                       structured: bool = False) -> Tuple[Optional[str], Optional[str]]:
        """(sequential module key, child position) for seq_goto/seq_prev/seq_next payloads."""
        if structured:
            data = EventParser.decode_payload(payload)
            if data is not None and data.get("id") and data.get("new") is not None:
                return str(data["id"]), EventParser.clean_child_ref(data["new"])
        return (
            EventParser.quoted_token(payload, key_token),
            EventParser.clean_child_ref(EventParser.quoted_token(payload, child_token)),
        )
