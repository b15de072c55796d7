# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Version Predicates

Single responsibility: Parse versions and evaluate dependency predicates.

Repository versions are coerced into semantic versions ("1.0" -> 1.0.0,
"2.40" -> 2.40.0). Predicates are normalized into semantic_version's
SimpleSpec grammar and evaluated by it:

    ""  or "*"          -> any version
    "1.2" / "==1.2"     -> exact (==1.2.0)
    ">=1.0,<2.0"        -> range (commas or whitespace separate comparators)
    "!=1.3"             -> range
    "^1.2.3"            -> >=1.2.3, <2.0.0 (0.x narrows like npm)
    "~1.2.3"            -> >=1.2.3, <1.3.0
    "1.*" / "1.x"       -> >=1.0.0, <2.0.0
    "1.0 - 2.0"         -> >=1.0.0, <=2.0.0
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

import semantic_version

from pkgmgr.core.errors import InvalidVersionError


ANY = "any"
EXACT = "exact"
RANGE = "range"

_HYPHEN_RANGE_RE = re.compile(r"^(?P<left>\S+)\s+-\s+(?P<right>\S+)$")
_OPERATOR_GAP_RE = re.compile(r"(<=|>=|==|!=|<|>|=|\^|~)\s+")
_TOKEN_RE = re.compile(r"^(?P<op><=|>=|==|!=|<|>|=|\^|~)?(?P<version>.+)$")
_WILDCARD_RE = re.compile(r"^\d+(?:\.\d+)?\.[*xX]$")


@dataclass(frozen=True)
class VersionPredicate:
    """Parsed version predicate; `spec` is None for ANY."""
    raw: str
    kind: str
    spec: Optional[semantic_version.SimpleSpec] = None

    def matches(self, version: str) -> bool:
        if self.spec is None:
            return True
        return self.spec.match(parse_version(version))


@lru_cache(maxsize=4096)
def parse_version(raw: str) -> semantic_version.Version:
    """
    Parse a repository version string.

    Raises:
        InvalidVersionError: If the string is not a version
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidVersionError(str(raw), "empty version")
    text = raw.strip()
    if text[0] in "vV" and len(text) > 1 and text[1].isdigit():
        text = text[1:]
    try:
        return semantic_version.Version.coerce(text)
    except ValueError as e:
        raise InvalidVersionError(raw, str(e))


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 comparing two version strings."""
    a, b = parse_version(left), parse_version(right)
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def _normalize(raw: str, text: str) -> List[str]:
    """
    Rewrite a predicate as SimpleSpec blocks.

    Plain versions are coerced so "==1.2" means exactly 1.2.0 (SimpleSpec
    would read a partial version as 1.2.x). Caret and tilde keep their
    partial forms, which SimpleSpec widens the npm way.
    """
    hyphen = _HYPHEN_RANGE_RE.match(text)
    if hyphen:
        left = parse_version(hyphen.group("left"))
        right = parse_version(hyphen.group("right"))
        if right < left:
            raise InvalidVersionError(raw, "upper bound below lower bound")
        return [f">={left}", f"<={right}"]

    blocks = []
    for token in re.split(r"[\s,]+", _OPERATOR_GAP_RE.sub(r"\1", text)):
        if not token:
            continue
        match = _TOKEN_RE.match(token)
        operator, version = match.group("op"), match.group("version")

        if operator in ("^", "~"):
            blocks.append(token)
        elif _WILDCARD_RE.match(version):
            if operator not in (None, "=", "=="):
                raise InvalidVersionError(raw, f"wildcard {version!r} needs no operator")
            blocks.append("==" + version.replace("x", "*").replace("X", "*"))
        else:
            operator = "==" if operator in (None, "=") else operator
            blocks.append(f"{operator}{parse_version(version)}")

    if not blocks:
        raise InvalidVersionError(raw, "no comparators")
    return blocks


@lru_cache(maxsize=4096)
def parse_predicate(raw: str) -> VersionPredicate:
    """
    Parse a predicate string into a VersionPredicate.

    Raises:
        InvalidVersionError: If the predicate is malformed
    """
    text = (raw or "").strip()
    if not text or text == "*":
        return VersionPredicate(raw=raw or "", kind=ANY)

    blocks = _normalize(raw, text)
    try:
        spec = semantic_version.SimpleSpec(",".join(blocks))
    except ValueError as e:
        raise InvalidVersionError(raw, str(e))

    exact = len(blocks) == 1 and blocks[0].startswith("==") and "*" not in blocks[0]
    return VersionPredicate(raw=raw, kind=EXACT if exact else RANGE, spec=spec)


def satisfies(version: str, predicate: str) -> bool:
    """Check whether a version string satisfies a predicate string."""
    return parse_predicate(predicate).matches(version)
