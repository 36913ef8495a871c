"""
Playlist code generation.

Codes are 6 symbols from A-Z0-9 (36^6, about 2.2 billion combinations). The
generator only checks that a code is free; it reserves nothing. The unique
index on ``playlist_code`` is the real race breaker, so callers that insert
should go through ``create_with_unique_code``, which redraws when the insert
itself loses a race.
"""
import logging
import secrets
import string
from typing import Awaitable, Callable, Optional, TypeVar

from channeldeck.config import get_settings
from channeldeck.errors import CodeSpaceExhausted, DuplicateCodeError
from channeldeck.models.user import CodeSpace

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6

T = TypeVar("T")


class CodeGenerator:
    """Draws codes and checks them against one code space of the store."""

    def __init__(self, store, max_attempts: Optional[int] = None):
        self.store = store
        self.max_attempts = max_attempts or get_settings().code_max_attempts

    @staticmethod
    def draw() -> str:
        """Draw one code of independent, uniformly random symbols."""
        return "".join(secrets.choice(ALPHABET) for _ in range(CODE_LENGTH))

    async def generate_unique_code(self, space: CodeSpace) -> str:
        """Return a code that is not in use in ``space`` right now.

        Any collision redraws the whole code. Store failures propagate as
        ``StorageError``; running out of attempts raises ``CodeSpaceExhausted``.
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self.draw()
            if not await self.store.exists_by_code(space, code):
                return code
            logger.debug(f"Code collision in {space.value} (attempt {attempt})")

        logger.error(f"No free code in {space.value} after {self.max_attempts} attempts")
        raise CodeSpaceExhausted(
            f"Could not generate a unique {space.value} code after {self.max_attempts} attempts"
        )

    async def create_with_unique_code(
        self, space: CodeSpace, insert: Callable[[str], Awaitable[T]]
    ) -> T:
        """Generate a code and hand it to ``insert``, retrying on a duplicate key."""
        for attempt in range(1, self.max_attempts + 1):
            code = await self.generate_unique_code(space)
            try:
                return await insert(code)
            except DuplicateCodeError:
                logger.warning(f"Code {code} was taken concurrently in {space.value}, retrying")

        raise CodeSpaceExhausted(
            f"Could not store a unique {space.value} code after {self.max_attempts} attempts"
        )
