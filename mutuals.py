import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Union

logger = logging.getLogger(__name__)

FOLLOWERS = "followers"
FOLLOWING = "following"
ROLES = (FOLLOWERS, FOLLOWING)

# Instagram "Download your information" export keys
FOLLOWERS_RECORDS_KEY = "string_list_data"
FOLLOWERS_VALUE_KEY = "value"
FOLLOWING_COLLECTION_KEY = "relationships_following"
FOLLOWING_TITLE_KEY = "title"

PROFILE_BASE_URL = "https://instagram.com/"

MUTUAL = "mutual"
NOT_FOLLOWING_BACK = "not_following_back"
DONT_FOLLOW_BACK = "dont_follow_back"
UNKNOWN = "unknown"


class ExportError(Exception):
    """Base class for everything the user can fix by re-uploading or retrying."""


class ParseError(ExportError):
    def __init__(self, file_name: str, role: str, reason: str):
        self.file_name = file_name or "<unnamed>"
        self.role = role
        self.reason = reason
        super().__init__(f"Error parsing {self.file_name} ({role}): {reason}")


class JsonSyntaxError(ParseError):
    pass


class ShapeMismatchError(ParseError):
    pass


class MissingFileError(ExportError):
    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Please select a file for {role}.")


class FileReadError(ExportError):
    def __init__(self, role: str, file_name: str, reason: str):
        self.role = role
        self.file_name = file_name or "<unnamed>"
        super().__init__(f"Could not read {self.file_name} ({role}): {reason}")


class PreconditionError(ExportError):
    pass


class UsernameSet:
    """Unique usernames, iterated in first-seen order."""

    def __init__(self, names: Iterable[str] = ()):
        self._names: Dict[str, None] = dict.fromkeys(names)

    def add(self, name: str) -> None:
        self._names.setdefault(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UsernameSet):
            return NotImplemented
        return list(self._names) == list(other._names)

    def __repr__(self) -> str:
        return f"UsernameSet({list(self._names)!r})"


@dataclass
class ComparisonResult:
    not_following_back: List[str] = field(default_factory=list)  # you follow them, they don't follow you
    dont_follow_back: List[str] = field(default_factory=list)  # they follow you, you don't follow them


def _load_json(role: str, raw: Union[str, bytes], file_name: str) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise JsonSyntaxError(file_name, role, f"file is not UTF-8 text ({e.reason})")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise JsonSyntaxError(file_name, role, f"not valid JSON ({e})")
    except RecursionError:
        raise ShapeMismatchError(file_name, role, "document is nested too deeply")
    except ValueError as e:
        # valid JSON holding a value Python refuses, e.g. an integer past the digit limit
        raise ShapeMismatchError(file_name, role, f"unsupported value ({e})")


def _follower_username(item: Any) -> str:
    """Username of the first identity record of one followers item, or raise ValueError."""
    if not isinstance(item, dict):
        raise ValueError("item is not an object")
    records = item.get(FOLLOWERS_RECORDS_KEY)
    if not isinstance(records, list) or not records:
        raise ValueError(f"'{FOLLOWERS_RECORDS_KEY}' is missing or empty")
    first = records[0]
    value = first.get(FOLLOWERS_VALUE_KEY) if isinstance(first, dict) else None
    if not isinstance(value, str) or not value:
        raise ValueError(f"first '{FOLLOWERS_RECORDS_KEY}' record has no '{FOLLOWERS_VALUE_KEY}' string")
    return value


def _following_username(record: Any) -> str:
    title = record.get(FOLLOWING_TITLE_KEY) if isinstance(record, dict) else None
    if not isinstance(title, str) or not title:
        raise ValueError(f"record has no '{FOLLOWING_TITLE_KEY}' string")
    return title


def _decode_followers(content: Any, file_name: str) -> UsernameSet:
    if not isinstance(content, list):
        raise ShapeMismatchError(file_name, FOLLOWERS, "expected a list of followers at the top level")
    if not content:
        raise ShapeMismatchError(file_name, FOLLOWERS, "the followers list is empty")
    names = UsernameSet()
    for i, item in enumerate(content):
        try:
            names.add(_follower_username(item))
        except ValueError as e:
            raise ShapeMismatchError(file_name, FOLLOWERS, f"item {i}: {e}")
    return names


def _decode_following(content: Any, file_name: str) -> UsernameSet:
    if not isinstance(content, dict) or FOLLOWING_COLLECTION_KEY not in content:
        raise ShapeMismatchError(file_name, FOLLOWING, f"file does not contain '{FOLLOWING_COLLECTION_KEY}'")
    records = content[FOLLOWING_COLLECTION_KEY]
    if not isinstance(records, list):
        raise ShapeMismatchError(file_name, FOLLOWING, f"'{FOLLOWING_COLLECTION_KEY}' is not a list")
    names = UsernameSet()
    for i, record in enumerate(records):
        try:
            names.add(_following_username(record))
        except ValueError as e:
            raise ShapeMismatchError(file_name, FOLLOWING, f"record {i}: {e}")
    return names


_DECODERS = {
    FOLLOWERS: _decode_followers,
    FOLLOWING: _decode_following,
}


def normalize(role: str, raw: Union[str, bytes], file_name: str = "") -> UsernameSet:
    """Parse one exported file into the set of usernames it lists.

    Raises JsonSyntaxError when the text is not JSON and ShapeMismatchError when the
    JSON is not shaped like the export for ``role``. Nothing partial is returned.
    """
    if role not in _DECODERS:
        raise ValueError(f"unknown role: {role!r}")
    content = _load_json(role, raw, file_name)
    names = _DECODERS[role](content, file_name)
    logger.debug("Parsed %d %s usernames from %s", len(names), role, file_name or "<unnamed>")
    return names


def compare(followers: UsernameSet, following: UsernameSet) -> ComparisonResult:
    if not followers or not following:
        raise PreconditionError("Please upload both followers and following files before comparing.")
    return ComparisonResult(
        not_following_back=[u for u in following if u not in followers],
        dont_follow_back=[u for u in followers if u not in following],
    )


def classify(username: str, followers: UsernameSet, following: UsernameSet) -> str:
    in_f1 = username in followers
    in_f2 = username in following
    if in_f1 and in_f2:
        return MUTUAL
    if in_f2:
        return NOT_FOLLOWING_BACK
    if in_f1:
        return DONT_FOLLOW_BACK
    return UNKNOWN


def profile_url(username: str, base: str = PROFILE_BASE_URL) -> str:
    return base + username
