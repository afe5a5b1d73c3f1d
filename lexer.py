from __future__ import annotations
from dataclasses import dataclass
from typing import List


class StackError(Exception):
    """Base class for interpreter errors."""


# Characters folded into an ordinary space before scanning.
WHITESPACE = ("\n", "\t", "\r", "　")

# Escaped letters kept as a literal two-character sequence at top level;
# PRINT/PRINTLN turn them into control characters at output time.
ESCAPE_SEQUENCES = {
    "n": "\\n",
    "t": "\\t",
    "r": "\\r",
}


@dataclass
class ScanState:
    strings: int = 0
    lists: int = 0
    blocks: int = 0
    comment: bool = False
    escape: bool = False

    @property
    def nested(self) -> bool:
        return self.strings != 0 or self.lists != 0 or self.comment


def _scan(text: str, *, split: bool, track_blocks: bool) -> List[str]:
    state = ScanState()
    tokens: List[str] = []
    buffer: List[str] = []
    buffer_append = buffer.append

    for ch in text:
        if ch == "\\" and not state.escape:
            state.escape = True
            continue
        if not state.escape:
            if ch == "(" and not state.comment:
                state.strings += 1
                buffer_append(ch)
                continue
            if ch == ")" and not state.comment:
                state.strings -= 1
                buffer_append(ch)
                continue
            if track_blocks and ch in "{}" and not state.comment and state.strings == 0:
                state.blocks += 1 if ch == "{" else -1
                buffer_append(ch)
                continue
            if ch == "#":
                state.comment = not state.comment
                buffer_append(ch)
                continue
            if ch in "[]" and not state.comment and state.strings == 0:
                state.lists += 1 if ch == "[" else -1
                buffer_append(ch)
                continue
            if (
                split
                and ch == " "
                and not state.comment
                and state.lists == 0
                and state.strings == 0
                and state.blocks == 0
            ):
                if buffer:
                    tokens.append("".join(buffer))
                    buffer.clear()
                continue

        if not state.nested:
            if state.escape:
                buffer_append(ESCAPE_SEQUENCES.get(ch, ch))
            else:
                buffer_append(ch)
        else:
            # Escapes are inert inside strings, lists and comments.
            if state.escape:
                buffer_append("\\")
            buffer_append(ch)
        state.escape = False

    if buffer:
        tokens.append("".join(buffer))
    return tokens


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = text

    def tokenize(self) -> List[str]:
        """Split source into whitespace-separated tokens.

        Spaces inside ``( )`` text literals, ``[ ]`` lists, ``{ }`` blocks and
        ``# #`` comments do not separate tokens, so each of those constructs
        arrives at the evaluator as a single token with its delimiters intact.
        """
        text = self.text
        for ch in WHITESPACE:
            text = text.replace(ch, " ")
        return _scan(text, split=True, track_blocks=True)


def unescape_text(body: str) -> str:
    """Apply the tokenizer's escape rules to the interior of a text literal."""
    scanned = _scan(body, split=False, track_blocks=False)
    return scanned[0] if scanned else ""


def tokenize(text: str) -> List[str]:
    return Lexer(text).tokenize()
