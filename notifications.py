# notifications.py
import logging
from dataclasses import dataclass, field

from twilio.rest import Client as TwilioClient

from models import Notification, db

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    name: str
    payload: dict = field(default_factory=dict)
    request_id: int = None

    def to_dict(self):
        return {"event": self.name, "request_id": self.request_id, **self.payload}


class NotificationSink:
    """Fire-and-forget delivery of a domain event to one user."""

    def notify(self, user_id, event):
        raise NotImplementedError


class NullNotificationSink(NotificationSink):
    def notify(self, user_id, event):
        pass


class DatabaseNotificationSink(NotificationSink):
    def notify(self, user_id, event):
        notif = Notification(user_id=str(user_id), request_id=event.request_id,
                             notif_type=event.name, payload=event.payload)
        db.session.add(notif)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


class SocketIONotificationSink(NotificationSink):
    def __init__(self, socketio):
        self.socketio = socketio

    def notify(self, user_id, event):
        self.socketio.emit(event.name, event.to_dict(), to=str(user_id))


class SmsNotificationSink(NotificationSink):
    """Texts the user through Twilio; ``phone_lookup`` maps a user id to a number."""

    def __init__(self, account_sid, auth_token, from_number, phone_lookup):
        self.client = TwilioClient(account_sid, auth_token)
        self.from_number = from_number
        self.phone_lookup = phone_lookup

    def notify(self, user_id, event):
        to = self.phone_lookup(user_id)
        if not to:
            logger.info("no phone number for user %s, skipping sms %s", user_id, event.name)
            return
        body = f"RapidRed: {event.name.replace('.', ' ')}"
        if event.request_id is not None:
            body += f" (request #{event.request_id})"
        self.client.messages.create(body=body, from_=self.from_number, to=to)


class CompositeNotificationSink(NotificationSink):
    def __init__(self, *sinks):
        self.sinks = list(sinks)

    def notify(self, user_id, event):
        for sink in self.sinks:
            try:
                sink.notify(user_id, event)
            except Exception:
                logger.exception("notification sink %s failed for %s",
                                  type(sink).__name__, event.name)
