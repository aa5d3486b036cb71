import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from mutuals import (
    FOLLOWERS,
    FOLLOWING,
    ROLES,
    ComparisonResult,
    ExportError,
    FileReadError,
    MissingFileError,
    PreconditionError,
    UsernameSet,
    compare,
    normalize,
)

logger = logging.getLogger(__name__)

Reader = Callable[[], Awaitable[Union[str, bytes]]]


class ExportSession:
    """Uploaded followers/following sets of one chat plus the latest result and error."""

    def __init__(self):
        self.sets: Dict[str, UsernameSet] = {role: UsernameSet() for role in ROLES}
        self.file_names: Dict[str, Optional[str]] = {role: None for role in ROLES}
        self.last_result: Optional[ComparisonResult] = None
        self.last_error: Optional[ExportError] = None
        # bumped on every read start; a read finishing with an older value is stale
        self._generation: Dict[str, int] = {role: 0 for role in ROLES}

    @property
    def followers(self) -> UsernameSet:
        return self.sets[FOLLOWERS]

    @property
    def following(self) -> UsernameSet:
        return self.sets[FOLLOWING]

    @property
    def ready(self) -> bool:
        return bool(self.followers) and bool(self.following)

    def _fail(self, err: ExportError) -> ExportError:
        self.last_error = err
        logger.info("%s: %s", type(err).__name__, err)
        return err

    def begin_read(self, role: str) -> int:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role!r}")
        self._generation[role] += 1
        return self._generation[role]

    async def load(self, role: str, read: Optional[Reader], file_name: str = "") -> Optional[UsernameSet]:
        """Read and parse one export file, replacing the stored set for ``role`` on success.

        Returns None when a newer read for the same role started while this one was
        in flight; the newer one wins and this result is dropped. On failure the
        previously stored set is kept and the error is raised.
        """
        if role not in ROLES:
            raise ValueError(f"unknown role: {role!r}")
        if read is None:
            raise self._fail(MissingFileError(role))
        token = self.begin_read(role)
        try:
            raw = await read()
        except Exception as e:
            if token != self._generation[role]:
                return None
            raise self._fail(FileReadError(role, file_name, str(e) or type(e).__name__)) from e
        if token != self._generation[role]:
            logger.debug("Dropping superseded %s read of %s", role, file_name)
            return None
        try:
            names = normalize(role, raw, file_name)
        except ExportError as e:
            raise self._fail(e)
        self.sets[role] = names
        self.file_names[role] = file_name or None
        self.last_error = None
        logger.info("Loaded %d %s from %s", len(names), role, file_name or "<unnamed>")
        return names

    def compare(self) -> ComparisonResult:
        try:
            result = compare(self.followers, self.following)
        except PreconditionError as e:
            raise self._fail(e)
        self.last_result = result
        self.last_error = None
        return result

    def reset(self):
        self.sets = {role: UsernameSet() for role in ROLES}
        self.file_names = {role: None for role in ROLES}
        self.last_result = None
        self.last_error = None
        for role in ROLES:
            self._generation[role] += 1
