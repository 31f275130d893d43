import asyncio
from typing import Dict, List, Optional
from ..utils.logger import setup_logger

logger = setup_logger('chathub.hub')

class Hub:
    """Connection registry for real-time pushes.
    
    Every open connection has a dedicated asyncio Queue; the transport
    drains it and writes the envelopes to the wire. Pushing to a
    connection that has gone away is a no-op.
    """
    
    def __init__(self):
        """Initialize message hub.
        
        Attributes:
            queues (Dict[str, asyncio.Queue]): Maps connection IDs to their outgoing queues
            _lock (asyncio.Lock): Guards the queue table
        """
        self.queues: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()
        logger.info("Message Hub initialized")

    async def register_queue(self, connection_id: str) -> asyncio.Queue:
        """Register a new outgoing queue for a connection.
        
        Args:
            connection_id (str): ID of the connection
            
        Returns:
            asyncio.Queue: New queue for the connection's pushes
        """
        async with self._lock:
            q = asyncio.Queue()
            self.queues[connection_id] = q
            logger.info(f"Registered queue for connection {connection_id}")
            logger.debug(f"Active connections: {list(self.queues.keys())}")
            return q

    async def remove_queue(self, connection_id: str):
        """Remove a connection's queue, typically when its stream closes."""
        async with self._lock:
            self.queues.pop(connection_id, None)
            logger.info(f"Removed queue for connection {connection_id}")
            logger.debug(f"Remaining active connections: {list(self.queues.keys())}")

    async def send(self, connection_id: Optional[str], event: str, data) -> bool:
        """Push one event to a specific connection.
        
        Args:
            connection_id (Optional[str]): Target connection
            event (str): Event name
            data: JSON-serializable payload
            
        Returns:
            bool: True if the envelope was queued, False if the connection is gone
        """
        if connection_id is None:
            return False
        async with self._lock:
            q = self.queues.get(connection_id)

        if q is None:
            logger.warning(f"Dropped '{event}' for connection {connection_id} - not connected")
            return False
        await q.put({"event": event, "data": data})
        logger.debug(f"Pushed '{event}' to connection {connection_id}")
        return True

    async def broadcast(self, event: str, data, exclude: Optional[str] = None) -> int:
        """Push one event to every open connection.
        
        Returns:
            int: Number of connections the envelope was queued for
        """
        async with self._lock:
            targets: List[asyncio.Queue] = [
                q for cid, q in self.queues.items() if cid != exclude
            ]
        for q in targets:
            await q.put({"event": event, "data": data})
        logger.debug(f"Broadcast '{event}' to {len(targets)} connections")
        return len(targets)

