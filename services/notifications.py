"""
Fire-and-forget notification fan-out.

Requests only enqueue work; a background task drains the bounded queue
inside an app context. A failed send is logged and counted, never raised
back to whoever triggered it.
"""
import logging
import queue
from collections import namedtuple

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

LISTING_CREATED = 'listing_created'
CLAIM_ACCEPTED = 'claim_accepted'
DELIVERY_ASSIGNED = 'delivery_assigned'
DELIVERY_COMPLETED = 'delivery_completed'

EVENTS = (LISTING_CREATED, CLAIM_ACCEPTED, DELIVERY_ASSIGNED, DELIVERY_COMPLETED)

Recipient = namedtuple('Recipient', ['profile_id', 'email', 'phone', 'name', 'extra'],
                       defaults=(None, None, None, None))
SendResult = namedtuple('SendResult', ['success', 'id', 'reason'], defaults=(None, None))
DispatchReport = namedtuple('DispatchReport', ['event', 'total', 'successful', 'failed'])

# (subject, body) per event; payload keys are filled in with str.format
TEMPLATES = {
    LISTING_CREATED: (
        "New donation near you",
        "New donation available: {quantity_kg} kg of {food_type}, {distance_km:.1f} km away. Claim it now!",
    ),
    CLAIM_ACCEPTED: (
        "Listing claimed: {food_type}",
        "Good news! {ngo_name} has claimed the {food_type} donation. They will coordinate pickup soon.",
    ),
    DELIVERY_ASSIGNED: (
        "Delivery assigned",
        "{volunteer_name} has been assigned to the delivery.",
    ),
    DELIVERY_COMPLETED: (
        "Delivery completed",
        "Impact Update: {meals_served} meals served, {co2_reduced_kg:.2f} kg CO2 saved! Thank you for making a difference.",
    ),
}


def render(template, payload):
    subject, body = TEMPLATES[template]
    return subject.format(**payload), body.format(**payload)


def profile_room(profile_id):
    """The Socket.IO room a connected profile joins; push notifications go there."""
    return f'profile:{profile_id}'


def recipient_for(profile, **extra):
    """Build a Recipient from a Profile row."""
    return Recipient(
        profile_id=profile.id,
        email=profile.email,
        phone=profile.phone,
        name=profile.organization_name or profile.full_name,
        extra=extra or None,
    )


# ==========================================
#  CHANNELS
# ==========================================
class PushChannel:
    """Socket push to the recipient's room, recorded in notification_logs."""
    name = 'push'

    def send(self, recipient, template, payload):
        # Import inside the function to avoid circular imports
        from extensions import db, socketio
        from models import NotificationLog, utcnow

        _, body = render(template, payload)
        log = NotificationLog(
            profile_id=recipient.profile_id,
            recipient=recipient.phone or recipient.email,
            channel=self.name,
            message_type=template,
            message_body=body,
            delivery_status='pending',
        )
        try:
            db.session.add(log)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            return SendResult(False, reason=f'could not log notification: {e}')

        try:
            socketio.emit('notification', {
                'type': template,
                'message': body,
                'data': payload,
            }, to=profile_room(recipient.profile_id))
            log.delivery_status = 'sent'
            log.delivered_at = utcnow()
            result = SendResult(True, id=log.notification_id)
        except Exception as e:
            log.delivery_status = 'failed'
            log.error_message = str(e)[:255]
            result = SendResult(False, id=log.notification_id, reason=str(e))

        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning("Could not update notification log %s: %s", log.notification_id, e)
        return result


class EmailChannel:
    name = 'email'

    def send(self, recipient, template, payload):
        from flask_mail import Message
        from extensions import mail

        if not recipient.email:
            return SendResult(False, reason='recipient has no email address')

        subject, body = render(template, payload)
        greeting = f"Hello {recipient.name},\n\n" if recipient.name else ""
        msg = Message(subject, recipients=[recipient.email])
        msg.body = greeting + body
        mail.send(msg)
        return SendResult(True, id=recipient.email)


# ==========================================
#  DISPATCHER
# ==========================================
class NotificationDispatcher:

    def __init__(self, app=None, channels=None):
        self.app = None
        self.channels = channels or {'push': PushChannel(), 'email': EmailChannel()}
        self._queue = queue.Queue(maxsize=1000)
        self._worker_started = False
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self._queue = queue.Queue(maxsize=app.config.get('NOTIFICATION_QUEUE_SIZE', 1000))
        self._worker_started = False
        app.extensions['notification_dispatcher'] = self

    def start(self):
        """Run the consumer as a SocketIO background task."""
        from extensions import socketio

        if self._worker_started:
            return
        self._worker_started = True
        socketio.start_background_task(self._run)
        logger.info("Notification worker started (queue size %s)", self._queue.maxsize)

    def dispatch(self, event, recipients, payload=None, channels=('push',)):
        """
        Queue one notification per recipient and channel.

        Returns False when the queue is full and the job was dropped.
        """
        if event not in EVENTS:
            raise ValueError(f'Unknown notification event: {event}')

        job = (event, list(recipients), dict(payload or {}), tuple(channels))
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            logger.warning("Notification queue full, dropped %s for %d recipients", event, len(job[1]))
            return False
        return True

    def pending(self):
        return self._queue.qsize()

    def drain(self):
        """Process everything queued so far in the calling thread."""
        reports = []
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return reports
            try:
                reports.append(self.process(*job))
            finally:
                self._queue.task_done()

    def _run(self):
        while True:
            job = self._queue.get()
            try:
                with self.app.app_context():
                    self.process(*job)
            except Exception:
                logger.exception("Notification job %s crashed", job[0])
            finally:
                self._queue.task_done()

    def process(self, event, recipients, payload, channels):
        """Send to every recipient on every channel; all-settled."""
        outcomes = []
        for recipient in recipients:
            data = dict(payload)
            data.update(recipient.extra or {})
            for channel_name in channels:
                outcomes.append(self._send_one(channel_name, recipient, event, data))

        successful = sum(1 for outcome in outcomes if outcome.success)
        report = DispatchReport(event, len(outcomes), successful, len(outcomes) - successful)
        logger.info("Dispatched %s: %d sent, %d failed", event, report.successful, report.failed)
        return report

    def _send_one(self, channel_name, recipient, event, payload):
        channel = self.channels.get(channel_name)
        if channel is None:
            logger.error("No notification channel named %s", channel_name)
            return SendResult(False, reason=f'unknown channel {channel_name}')
        try:
            result = channel.send(recipient, event, payload)
        except Exception as e:
            logger.warning("%s %s to profile %s failed: %s", channel_name, event, recipient.profile_id, e)
            return SendResult(False, reason=str(e))
        if not result.success:
            logger.warning("%s %s to profile %s not delivered: %s",
                           channel_name, event, recipient.profile_id, result.reason)
        return result
