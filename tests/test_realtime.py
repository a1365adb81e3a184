import asyncio
from types import SimpleNamespace

from attendance_service.realtime import ATTENDANCE_CHANNEL, AttendanceFeed


class RecordingConnections:
    def __init__(self):
        self.messages = []

    async def broadcast(self, message, channel):
        self.messages.append((channel, message))


class WatchingBackend:
    def __init__(self):
        self.callback = None
        self.unsubscribed = False

    def watch_attendance(self, callback):
        self.callback = callback
        return SimpleNamespace(unsubscribe=lambda: setattr(self, "unsubscribed", True))


def change(date):
    return SimpleNamespace(document=SimpleNamespace(to_dict=lambda: {"date": date}))


def test_snapshot_from_sdk_thread_reaches_dashboards():
    backend = WatchingBackend()
    connections = RecordingConnections()
    feed = AttendanceFeed(backend, connections)

    async def scenario():
        feed.start(asyncio.get_running_loop())
        # Firestore calls back from its own thread
        await asyncio.to_thread(backend.callback, [], [change("2026-10-19"), change("2026-10-19")], None)
        for _ in range(50):
            if connections.messages:
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    channel, message = connections.messages[0]
    assert channel == ATTENDANCE_CHANNEL
    assert message["type"] == "attendance_changed"
    assert message["changes"] == 2
    assert message["dates"] == ["2026-10-19"]


def test_empty_snapshot_is_ignored():
    connections = RecordingConnections()
    feed = AttendanceFeed(WatchingBackend(), connections)
    feed.on_snapshot([], [], None)
    assert connections.messages == []


def test_stop_unsubscribes():
    backend = WatchingBackend()
    feed = AttendanceFeed(backend, RecordingConnections())
    loop = asyncio.new_event_loop()
    try:
        feed.start(loop)
        feed.stop()
    finally:
        loop.close()
    assert backend.unsubscribed is True
    assert feed.watch is None
