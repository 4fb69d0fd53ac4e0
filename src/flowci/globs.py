# globs.py
# Path globs shared by branch filters, path filters and hashFiles():
#   `*` and `?` stay within one path segment, `**` crosses segments,
#   `**/` also matches zero directories, a leading `!` negates.
from __future__ import annotations

import re
from functools import lru_cache
from typing import Sequence


@lru_cache(maxsize=256)
def pattern_regex(pattern: str) -> "re.Pattern[str]":
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_matches(value: str, patterns: Sequence[str]) -> bool:
    """
    Evaluate patterns in order; a leading `!` negates a previous match.
    An empty pattern list matches nothing.
    """
    matched = False
    for pat in patterns:
        if pat.startswith("!"):
            if matched and pattern_regex(pat[1:]).match(value):
                matched = False
        elif pattern_regex(pat).match(value):
            matched = True
    return matched
