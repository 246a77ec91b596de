"""
Turn commit envelope.

Persists the interpreter's new game state and the advanced turn counter
as one unit:

- the write is conditional on the game version read at turn start
  (optimistic concurrency; a stale turn is rejected, nothing is written)
- any other persistence failure restores the pre-turn snapshot, so a
  half-applied turn is never visible

Usage:
    committer = TurnCommitter(game_store)
    async with committer.transaction(game) as txn:
        txn.stage(result.new_state)
    stored = txn.committed_record
"""

import logging
from types import TracebackType

from ..db.repositories import GameStore
from ..errors import ApplyError, StaleStateError
from ..models.game_state import GameRecord, GameState

logger = logging.getLogger(__name__)


class TurnTransaction:
    """One pending commit. Commits on clean exit, rolls back on exception."""

    def __init__(self, store: GameStore, game: GameRecord):
        self.store = store
        self.snapshot = game.model_copy(deep=True)
        self.staged: GameState | None = None
        self.committed_record: GameRecord | None = None
        self.committed = False
        self.rolled_back = False

    def stage(self, new_state: GameState) -> "TurnTransaction":
        self.staged = new_state
        return self

    async def __aenter__(self) -> "TurnTransaction":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        if exc_type is not None:
            # Exception inside the block: nothing was written yet
            self.rolled_back = True
            return False
        if not self.committed and not self.rolled_back and self.staged is not None:
            await self.commit()
        return False

    async def commit(self) -> GameRecord:
        if self.staged is None:
            raise ApplyError("Nothing staged to commit")
        updated = self.snapshot.model_copy(deep=True, update={
            "state": self.staged,
            "turn_count": self.snapshot.turn_count + 1,
        })
        try:
            self.committed_record = await self.store.save_game(updated, expected_version=self.snapshot.version)
        except StaleStateError:
            self.rolled_back = True
            logger.warning(f"[Commit] Rejected stale turn for game {self.snapshot.id} (version {self.snapshot.version})")
            raise
        except Exception as e:
            await self.rollback()
            raise ApplyError(f"Failed to commit game {self.snapshot.id}: {e}") from e
        self.committed = True
        logger.info(
            f"[Commit] Game {self.snapshot.id} -> turn {updated.turn_count}, "
            f"version {self.committed_record.version}"
        )
        return self.committed_record

    async def rollback(self) -> None:
        """Put the pre-turn snapshot back if the failed write left anything behind."""
        self.rolled_back = True
        try:
            current = await self.store.get_game(self.snapshot.id)
            if current is not None and current.version != self.snapshot.version:
                await self.store.restore(self.snapshot)
                logger.warning(f"[Commit] Restored game {self.snapshot.id} to version {self.snapshot.version}")
        except Exception as e:
            # The store is unreachable; the caller still gets ApplyError for the original failure.
            logger.error(f"[Commit] Rollback for game {self.snapshot.id} failed: {e}", exc_info=e)


class TurnCommitter:
    def __init__(self, store: GameStore):
        self.store = store

    def transaction(self, game: GameRecord) -> TurnTransaction:
        return TurnTransaction(self.store, game)

    async def commit(self, game: GameRecord, new_state: GameState) -> GameRecord:
        async with self.transaction(game) as txn:
            txn.stage(new_state)
        return txn.committed_record
