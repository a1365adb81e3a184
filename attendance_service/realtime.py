"""Firestore change feed for the attendance collection.

The snapshot listener fires on a Firebase SDK thread; each change is handed
to the event loop, which tells connected dashboards to refresh.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from attendance_service.firebase_service import FirebaseService
from attendance_service.ws_manager import ConnectionManager, manager

logger = logging.getLogger(__name__)

ATTENDANCE_CHANNEL = "attendance"


class AttendanceFeed:
    def __init__(self, backend: FirebaseService, connections: ConnectionManager = manager):
        self.backend = backend
        self.connections = connections
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.watch = None

    def start(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.watch = self.backend.watch_attendance(self.on_snapshot)
        logger.info("Subscribed to attendance changes")

    def stop(self):
        if self.watch is not None:
            self.watch.unsubscribe()
            self.watch = None
            logger.info("Unsubscribed from attendance changes")

    def on_snapshot(self, col_snapshot, changes, read_time):
        if not changes or self.loop is None:
            return

        dates = sorted({
            (change.document.to_dict() or {}).get("date")
            for change in changes
            if change.document is not None
        } - {None})
        payload = {
            "type": "attendance_changed",
            "changes": len(changes),
            "dates": dates,
            "timestamp": datetime.utcnow().isoformat(),
        }
        logger.debug("Attendance change feed: %s", payload)
        asyncio.run_coroutine_threadsafe(
            self.connections.broadcast(payload, ATTENDANCE_CHANNEL), self.loop
        )
