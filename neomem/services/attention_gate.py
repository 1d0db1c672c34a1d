"""
Attention gate: a cheap heuristic admission filter for auto-captured messages.

Obvious noise is rejected without any LLM call. Everything that passes is
stored as-is; scoring and categorization happen later in the sleep cycle.
"""

import re
from typing import List, Optional, Tuple

# Length and word-count bounds
MIN_CAPTURE_CHARS = 30
MAX_CAPTURE_CHARS = 2000
MIN_WORD_COUNT = 8

MAX_ASSISTANT_CAPTURE_CHARS = 1000
MIN_ASSISTANT_WORD_COUNT = 10

MAX_EMOJI_COUNT = 3
MAX_CODE_FRACTION = 0.5

INJECTED_CONTEXT_MARKERS = ('<relevant-memories>', '<core-memory-refresh>')
TOOL_OUTPUT_MARKERS = ('<tool_result>', '<tool_use>', '<function_call>')

_EMOJI_RANGES = '\U0001F300-\U0001F9FF\u2600-\u26FF\u2700-\u27BF\U0001FA00-\U0001FAFF'
_EMOJI_CHAR = re.compile(f'[{_EMOJI_RANGES}]')
_CODE_BLOCK = re.compile(r'```[\s\S]*?```')

# Ordered (pattern, label) table, evaluated top to bottom
NOISE_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(
        r'^(hi|hey|hello|yo|sup|ok|okay|sure|thanks|thank you|thx|ty|yep|yup|nope|no|yes|yeah|cool|nice|great|got it|'
        r'sounds good|perfect|alright|fine|noted|ack|kk|k)\s*[.!?]*$', re.IGNORECASE), 'greeting/ack'),
    (re.compile(
        r'^(ok|okay|yes|yeah|yep|sure|no|nope|alright|right|fine|cool|nice|great)\s+'
        r'(great|good|sure|thanks|please|ok|fine|cool|yeah|perfect|noted|absolutely|definitely|exactly)\s*[.!?]*$',
        re.IGNORECASE), 'two-word affirmation'),
    (re.compile(
        r"^(ok[,.]?\s+)?(i('ll|'m|'d|'ve)?\s+)?(just\s+)?"
        r"(need|want|got|have|let|let's|let me|give me|send|do|did|try|check|see|look at|test|take|get|go|use)\s+"
        r'(it|that|this|those|these|them|some|one|the|a|an|me|him|her|us)\s*'
        r'(out|up|now|then|too|again|later|first|here|there|please)?\s*[.!?]*$', re.IGNORECASE), 'deictic phrase'),
    (re.compile(r'^(ok|okay|yes|yeah|yep|sure|no|nope|right|alright|fine|cool|nice|great|perfect)[,.]?\s+.{0,20}$',
                re.IGNORECASE), 'short acknowledgment'),
    (re.compile(
        r'^(hmm+|huh|haha|ha|lol|lmao|rofl|nah|meh|idk|brb|ttyl|omg|wow|whoa|welp|oops|ooh|aah|ugh|bleh|pfft|smh|ikr|'
        r'tbh|imo|fwiw|np|nvm|nm|wut|wat|wha|heh|tsk|sigh|yay|woo+|boo|dang|darn|geez|gosh|sheesh|oof)\s*[.!?]*$',
        re.IGNORECASE), 'filler'),
    (re.compile(r'^\S{0,3}$'), 'near-empty'),
    (re.compile(f'^[{_EMOJI_RANGES}\u200d\ufe0f\\s]+$'), 'pure emoji'),
    (re.compile(r'^<[a-z-]+>[\s\S]*</[a-z-]+>$', re.IGNORECASE), 'markup'),
    (re.compile(r'^A new session was started via', re.IGNORECASE), 'session reset'),
    (re.compile(r'\[slack message id:', re.IGNORECASE), 'channel metadata'),
    (re.compile(r'\[message_id:', re.IGNORECASE), 'channel metadata'),
    (re.compile(r'\[telegram message id:', re.IGNORECASE), 'channel metadata'),
    (re.compile(r'Read HEARTBEAT\.md if it exists', re.IGNORECASE), 'heartbeat'),
    (re.compile(r'^Pre-compaction memory flush', re.IGNORECASE), 'compaction flush'),
    (re.compile(r'^System:\s*\[', re.IGNORECASE), 'system message'),
    (re.compile(r'^\[cron:[0-9a-f-]+', re.IGNORECASE), 'cron'),
    (re.compile(r'^GatewayRestart:\s*\{', re.IGNORECASE), 'gateway restart'),
    (re.compile(r'^\[\w{3}\s+\d{4}-\d{2}-\d{2}\s.*\]\s*A background task', re.IGNORECASE), 'background task'),
]

_NARRATION_VERBS = ('check|look|see|try|run|start|test|read|update|verify|fix|search|process|create|build|set up|'
                    'examine|investigate|query|fetch|pull|scan|clean|install|download|configure')

# Assistant self-narration: play-by-play commentary rather than a conclusion or fact
ASSISTANT_NARRATION_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(rf'^(ok[,.]?\s+)?(now\s+)?let me\s+({_NARRATION_VERBS})', re.IGNORECASE), 'let-me narration'),
    (re.compile(rf"^I('ll| will)\s+({_NARRATION_VERBS}|execute|help|handle)", re.IGNORECASE), 'intent narration'),
    (re.compile(
        r'^(starting|running|processing|checking|fetching|scanning|building|installing|downloading|configuring|'
        r'executing|loading|updating)\s', re.IGNORECASE), 'status update'),
    (re.compile(r'^(good|great|perfect|nice|excellent|awesome|done)[!.]?\s+(i |the |now |let |we |that )',
                re.IGNORECASE), 'exclamation opener'),
    (re.compile(r'^now\s+(i\s+(have|can|need|see|understand)|we\s+(have|can|need)|the\s)', re.IGNORECASE),
     'progress narration'),
    (re.compile(r'^\*?\*?step\s+\d', re.IGNORECASE), 'step narration'),
    (re.compile(r'^(found it|found the|i see\s*[—–-])', re.IGNORECASE), 'finding narration'),
    (re.compile(r'^\[?(mon|tue|wed|thu|fri|sat|sun)\s+\d{4}-\d{2}-\d{2}', re.IGNORECASE), 'task description'),
    (re.compile(r'^\U0001F504\s*\*?\*?context reset', re.IGNORECASE), 'context reset'),
    (re.compile(r'^based on this conversation,?\s*generate a short', re.IGNORECASE), 'slug prompt'),
]


def _first_match(text: str, patterns: List[Tuple[re.Pattern, str]]) -> Optional[str]:
    for pattern, label in patterns:
        if pattern.search(text):
            return label
    return None


def noise_label(text: str) -> Optional[str]:
    """Return the label of the first noise pattern matching ``text``, or None."""
    return _first_match((text or '').strip(), NOISE_PATTERNS)


def count_emoji(text: str) -> int:
    return len(_EMOJI_CHAR.findall(text))


def _has_marker(text: str, markers) -> bool:
    return any(marker in text for marker in markers)


def passes_attention_gate(text: str) -> bool:
    """
    Decide whether a user message is worth storing as a memory.

    Args:
        text: Raw message text

    Returns:
        True if the message should be retained
    """
    trimmed = (text or '').strip()

    if len(trimmed) < MIN_CAPTURE_CHARS or len(trimmed) > MAX_CAPTURE_CHARS:
        return False
    if len(trimmed.split()) < MIN_WORD_COUNT:
        return False
    if _has_marker(trimmed, INJECTED_CONTEXT_MARKERS):
        return False
    if _first_match(trimmed, NOISE_PATTERNS):
        return False
    if count_emoji(trimmed) > MAX_EMOJI_COUNT:
        return False
    return True


def passes_assistant_attention_gate(text: str) -> bool:
    """
    Stricter variant of the gate for assistant messages.

    On top of the user checks this rejects mostly-code replies, tool output and
    self-narration ("Let me check...", "Step 1:").
    """
    trimmed = (text or '').strip()

    if len(trimmed) < MIN_CAPTURE_CHARS or len(trimmed) > MAX_ASSISTANT_CAPTURE_CHARS:
        return False
    if len(trimmed.split()) < MIN_ASSISTANT_WORD_COUNT:
        return False

    code_chars = sum(len(m.group(0)) for m in _CODE_BLOCK.finditer(trimmed))
    if code_chars > len(trimmed) * MAX_CODE_FRACTION:
        return False

    if _has_marker(trimmed, TOOL_OUTPUT_MARKERS) or _has_marker(trimmed, INJECTED_CONTEXT_MARKERS):
        return False
    if _first_match(trimmed, NOISE_PATTERNS):
        return False
    if _first_match(trimmed, ASSISTANT_NARRATION_PATTERNS):
        return False
    if count_emoji(trimmed) > MAX_EMOJI_COUNT:
        return False
    return True
