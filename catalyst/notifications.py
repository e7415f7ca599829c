"""
Desktop notifications for pipeline events that want a human's attention.

Sent through notify-send, so any freedesktop daemon (mako, dunst, GNOME,
KDE) displays them. Missing notify-send is not an error; nothing is shown.
"""

import logging
import shutil
import subprocess
import threading

from catalyst.workflow.events import Event, EventBus, EventKind, Subscription

logger = logging.getLogger(__name__)

VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200
NOTIFY_TIMEOUT = 5


def notify(title: str, message: str, urgency: str = "normal"):
    """Show one desktop notification. Failures are logged, never raised."""
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if shutil.which("notify-send") is None:
        logger.debug("notify-send not on PATH; notification dropped")
        return

    cmd = ["notify-send", "--urgency", urgency, "--app-name", "Catalyst", title, message]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=NOTIFY_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning(f"notify-send timed out after {NOTIFY_TIMEOUT}s")
        return
    except OSError as e:
        logger.warning(f"Could not run notify-send: {e}")
        return
    if proc.returncode != 0:
        logger.warning(f"notify-send exited {proc.returncode}: {proc.stderr.strip()}")


def _clip(text: str) -> str:
    return text if len(text) <= MAX_NOTIFICATION_LENGTH else text[:MAX_NOTIFICATION_LENGTH] + "..."


def _interaction_message(payload: dict) -> str:
    return f"Needs input: {payload.get('title', payload.get('reason', ''))}"


def _failure_message(payload: dict) -> str:
    return f"Failed: {payload.get('reason') or 'unknown'}"


# kind -> (message builder, urgency)
_NOTIFYING = {
    EventKind.INTERACTION_REQUIRED: (_interaction_message, "normal"),
    EventKind.PIPELINE_COMPLETED: (lambda payload: "Feature complete", "low"),
    EventKind.PIPELINE_FAILED: (_failure_message, "critical"),
}


def notify_for_event(event: Event) -> bool:
    """Notify if the event kind calls for it. Returns whether a notification was sent."""
    entry = _NOTIFYING.get(event.kind)
    if entry is None:
        return False
    build, urgency = entry
    notify(f"Catalyst: {event.feature_id}", _clip(build(event.payload or {})), urgency)
    return True


def start_notifier(bus: EventBus) -> Subscription:
    """
    Subscribe to the bus and notify from a daemon thread.

    Closing the returned subscription ends the thread's loop.
    """
    subscription = bus.subscribe()

    def pump():
        for event in subscription:
            notify_for_event(event)

    threading.Thread(target=pump, name="catalyst-notifier", daemon=True).start()
    return subscription
