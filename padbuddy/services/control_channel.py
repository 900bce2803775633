"""
Control channel - the realtime database shared with field devices.

ARCHITECTURE:
  - Tree-structured key/value store with push change notifications
  - Devices read commands from devices/{id}/commands/... and write back
    status, actualState and error on the same record
  - Heartbeats and sensor pushes arrive under devices/{id}/...

The Firebase SDK is blocking and delivers listener events on its own
threads. FirebaseControlChannel runs every call in a worker thread and hands
listener events back to the event loop, so the rest of the orchestrator only
ever sees coroutines and loop-thread callbacks.

Subscribers always receive the full current value at the subscribed path,
never put/patch deltas. The first delivery happens right after subscribing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

from firebase_admin import db

logger = logging.getLogger(__name__)

# (path, value) -> None, always invoked on the event loop thread
ChangeCallback = Callable[[str, Any], None]
# current value -> new value, must be pure (may run several times)
TransactionFn = Callable[[Any], Any]


class Subscription(ABC):
    """Handle for an active change subscription"""

    @abstractmethod
    def close(self):
        """Stop delivering notifications"""


class ControlChannel(ABC):
    """Async view of the realtime store used to talk to devices"""

    @abstractmethod
    async def get(self, path: str) -> Any:
        ...

    @abstractmethod
    async def set(self, path: str, value: Any):
        ...

    @abstractmethod
    async def update(self, path: str, values: Dict[str, Any]):
        ...

    @abstractmethod
    async def transaction(self, path: str, update_fn: TransactionFn) -> Any:
        """Atomically replace the value at path.

        Returns:
            the committed value
        """

    @abstractmethod
    async def subscribe(self, path: str, callback: ChangeCallback) -> Subscription:
        ...


class _FirebaseSubscription(Subscription):
    def __init__(self, path: str, registration):
        self.path = path
        self._registration = registration

    def close(self):
        try:
            self._registration.close()
        except Exception as e:
            logger.warning(f"Error closing listener on {self.path}: {e}")


class FirebaseControlChannel(ControlChannel):
    """ControlChannel backed by firebase_admin.db"""

    def __init__(self, app=None):
        """
        Args:
            app: firebase_admin App (default app if None). Must have been
                initialized with a databaseURL.
        """
        self._app = app

    def _ref(self, path: str):
        return db.reference(path, app=self._app)

    async def get(self, path: str) -> Any:
        return await asyncio.to_thread(self._ref(path).get)

    async def set(self, path: str, value: Any):
        await asyncio.to_thread(self._ref(path).set, value)

    async def update(self, path: str, values: Dict[str, Any]):
        await asyncio.to_thread(self._ref(path).update, values)

    async def transaction(self, path: str, update_fn: TransactionFn) -> Any:
        return await asyncio.to_thread(self._ref(path).transaction, update_fn)

    async def subscribe(self, path: str, callback: ChangeCallback) -> Subscription:
        loop = asyncio.get_running_loop()
        ref = self._ref(path)

        def on_event(event):
            # event.data is a delta for patch events; re-read the whole value
            try:
                value = ref.get()
            except Exception as e:
                logger.error(f"❌ Failed to read {path} after change event: {e}")
                return
            loop.call_soon_threadsafe(callback, path, value)

        registration = await asyncio.to_thread(ref.listen, on_event)
        logger.debug(f"👂 Listening on {path}")
        return _FirebaseSubscription(path, registration)

