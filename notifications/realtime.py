"""Realtime push of alert events to connected subscribers.

Each subscriber owns a bounded queue drained by its own daemon thread, so a
slow subscriber only loses its own messages and a broken one is dropped
without touching the others. Transport is abstracted as a `send(text)`
callable (a websocket's send, for instance).
"""
import json
import queue
import uuid
import logging
import threading
from enum import Enum

from models.alerts import utcnow

logger = logging.getLogger("alertmon.notifications.realtime")


class MessageType(str, Enum):
    ALERT = "ALERT"
    ALERT_STATUS_UPDATE = "ALERT_STATUS_UPDATE"
    SYSTEM_NOTIFICATION = "SYSTEM_NOTIFICATION"
    HEARTBEAT = "HEARTBEAT"
    USER_MESSAGE = "USER_MESSAGE"


def envelope(msg_type, data) -> str:
    return json.dumps({
        "type": getattr(msg_type, "value", msg_type),
        "timestamp": utcnow().isoformat(),
        "data": data,
    }, default=str)


class _Subscriber:
    def __init__(self, subscriber_id, send, queue_size):
        self.id = subscriber_id
        self.send = send
        self.queue = queue.Queue(maxsize=queue_size)
        self.closed = threading.Event()
        self.dropped = 0
        self.delivered = 0
        self.connected_at = utcnow()
        self.thread = None


class RealtimePushChannel:
    def __init__(self, queue_size=100, poll_interval=0.5):
        self.queue_size = queue_size
        self.poll_interval = poll_interval
        self._subscribers = {}
        self._lock = threading.Lock()

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def connect(self, send, subscriber_id=None) -> str:
        subscriber_id = subscriber_id or uuid.uuid4().hex[:12]
        sub = _Subscriber(subscriber_id, send, self.queue_size)
        with self._lock:
            if subscriber_id in self._subscribers:
                raise ValueError(f"Subscriber {subscriber_id} already connected")
            self._subscribers[subscriber_id] = sub
        sub.thread = threading.Thread(target=self._drain, args=(sub,), daemon=True,
                                      name=f"alertmon-push-{subscriber_id}")
        sub.thread.start()
        logger.info(f"Realtime subscriber {subscriber_id} connected ({self.connection_count} total)")
        return subscriber_id

    def disconnect(self, subscriber_id) -> bool:
        with self._lock:
            sub = self._subscribers.pop(subscriber_id, None)
        if sub is None:
            return False
        sub.closed.set()
        logger.info(f"Realtime subscriber {subscriber_id} disconnected")
        return True

    def _drain(self, sub):
        while not sub.closed.is_set():
            try:
                message = sub.queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            try:
                sub.send(message)
                sub.delivered += 1
            except Exception as e:
                logger.warning(f"Send to subscriber {sub.id} failed, disconnecting: {e}")
                self.disconnect(sub.id)

    def _enqueue(self, sub, message) -> bool:
        if sub.closed.is_set():
            return False
        try:
            sub.queue.put_nowait(message)
            return True
        except queue.Full:
            sub.dropped += 1
            logger.warning(f"Subscriber {sub.id} queue full, dropped message ({sub.dropped} total)")
            return False

    def _publish(self, msg_type, data) -> bool:
        """Queue a message for every subscriber.

        True when at least one subscriber accepted it, or when nobody is connected.
        """
        message = envelope(msg_type, data)
        with self._lock:
            subs = list(self._subscribers.values())
        if not subs:
            return True
        accepted = [self._enqueue(sub, message) for sub in subs]
        return any(accepted)

    def broadcast_alert(self, record) -> bool:
        return self._publish(MessageType.ALERT, record.to_dict())

    def broadcast_status_update(self, alert_id, status, updated_by) -> bool:
        return self._publish(MessageType.ALERT_STATUS_UPDATE, {
            "alert_id": alert_id,
            "status": getattr(status, "value", status),
            "updated_by": updated_by,
        })

    def broadcast_system_notification(self, title, body, level="INFO") -> bool:
        return self._publish(MessageType.SYSTEM_NOTIFICATION, {
            "title": title, "message": body, "level": level,
        })

    def send_heartbeat(self) -> bool:
        return self._publish(MessageType.HEARTBEAT, {"connections": self.connection_count})

    def send_to(self, subscriber_id, data, msg_type=MessageType.USER_MESSAGE) -> bool:
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
        if sub is None:
            return False
        return self._enqueue(sub, envelope(msg_type, data))

    def handle_client_message(self, subscriber_id, payload):
        """React to a message received from a subscriber (ping or subscribe)."""
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError:
                logger.warning(f"Unparseable message from subscriber {subscriber_id}")
                return False
        if not isinstance(payload, dict):
            return False

        kind = str(payload.get("type", "")).lower()
        if kind == "ping":
            return self.send_to(subscriber_id, {}, msg_type="pong")
        if kind == "subscribe":
            return self.send_to(subscriber_id, {"topics": payload.get("topics", ["alerts"])},
                                msg_type="subscription_confirmed")
        logger.debug(f"Ignoring {kind or 'untyped'} message from subscriber {subscriber_id}")
        return False

    def stats(self):
        with self._lock:
            subs = list(self._subscribers.values())
        return {
            "connections": len(subs),
            "subscribers": {
                s.id: {"delivered": s.delivered, "dropped": s.dropped, "queued": s.queue.qsize()}
                for s in subs
            },
        }

    def close(self, timeout=2.0):
        with self._lock:
            subs = list(self._subscribers.values())
            self._subscribers.clear()
        for sub in subs:
            sub.closed.set()
        for sub in subs:
            if sub.thread is not None and sub.thread is not threading.current_thread():
                sub.thread.join(timeout=timeout)
