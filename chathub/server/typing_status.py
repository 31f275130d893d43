import asyncio, time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from .models import TypingStatus
from ..utils.logger import setup_logger

logger = setup_logger('chathub.typing')

ExpiryCallback = Callable[[str, TypingStatus], Awaitable[None]]


class TypingIndicators:
    """Short-lived "user is typing" entries, at most one per user.
    
    Each start schedules an expiry task keyed by user ID. Starting again
    or stopping cancels the pending task before anything else happens, so
    an old timer can never announce "stopped" over a fresh entry.
    """

    def __init__(self, window: float = 3.0, stale_after: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.stale_after = stale_after
        self.clock = clock
        self.statuses: Dict[str, TypingStatus] = {}
        self.timers: Dict[str, asyncio.Task] = {}

    def get(self, user_id: str) -> Optional[TypingStatus]:
        return self.statuses.get(user_id)

    def start(self, user_id: str, chat_id: str, is_private: bool,
              on_expire: Optional[ExpiryCallback] = None) -> Tuple[TypingStatus, Optional[TypingStatus]]:
        """(Re)set the typing entry of a user and schedule its expiry.
        
        Args:
            user_id (str): Typing user
            chat_id (str): Group ID, or the other party's ID for private chats
            is_private (bool): True for a private chat
            on_expire: Coroutine called with (user_id, status) when the window elapses
            
        Returns:
            Tuple[TypingStatus, Optional[TypingStatus]]: The new entry and the one it replaced
        """
        self._cancel_timer(user_id)
        previous = self.statuses.get(user_id)
        status = TypingStatus(chat_id=chat_id, is_private=is_private, started_at=self.clock())
        self.statuses[user_id] = status
        if on_expire is not None:
            self.timers[user_id] = asyncio.create_task(self._expire_later(user_id, status, on_expire))
        logger.debug(f"User {user_id} typing in {chat_id} (private={is_private})")
        return status, previous

    def stop(self, user_id: str) -> Optional[TypingStatus]:
        """Clear the typing entry of a user and cancel its timer."""
        self._cancel_timer(user_id)
        status = self.statuses.pop(user_id, None)
        if status is not None:
            logger.debug(f"User {user_id} stopped typing in {status.chat_id}")
        return status

    def clear_if_current(self, user_id: str, status: TypingStatus) -> bool:
        """Clear the entry only if it is still the given one."""
        if self.statuses.get(user_id) is not status:
            return False
        self.statuses.pop(user_id, None)
        return True

    def sweep(self) -> List[Tuple[str, TypingStatus]]:
        """Remove entries older than stale_after whose timers never cleared them.
        
        Returns:
            List[Tuple[str, TypingStatus]]: The removed (user_id, status) pairs
        """
        now = self.clock()
        stale = [
            (user_id, status) for user_id, status in self.statuses.items()
            if now - status.started_at > self.stale_after
        ]
        for user_id, _ in stale:
            self.stop(user_id)
        if stale:
            logger.info(f"Swept {len(stale)} stale typing entries")
        return stale

    def clear(self):
        for user_id in list(self.timers):
            self._cancel_timer(user_id)
        self.statuses.clear()

    def _cancel_timer(self, user_id: str):
        task = self.timers.pop(user_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_later(self, user_id: str, status: TypingStatus, on_expire: ExpiryCallback):
        await asyncio.sleep(self.window)
        if self.timers.get(user_id) is asyncio.current_task():
            self.timers.pop(user_id, None)
        try:
            await on_expire(user_id, status)
        except Exception as e:
            logger.error(f"Typing expiry for user {user_id} failed: {e}")
