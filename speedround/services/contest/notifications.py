"""Winner/loser notification jobs and the queue they are handed to.

Delivery (SMTP, WhatsApp API) belongs to the queue workers; this module only
builds jobs and enqueues them fire-and-forget.
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol
from urllib.parse import urlencode

from flask import current_app

from speedround import db
from speedround.models import NotificationRecord

EMAIL = 'email'
WHATSAPP = 'whatsapp'

WINNER_TEMPLATE = 'winner_notification'
LOSER_TEMPLATE = 'loser_notification'

PRIORITY_HIGH = 1
PRIORITY_NORMAL = 2


@dataclass(frozen=True)
class NotificationJob:
    recipient: str
    channel: str
    template: str
    variables: Dict[str, Any] = field(default_factory=dict)
    priority: int = PRIORITY_NORMAL
    attempt_id: Optional[int] = None


class NotificationQueue(Protocol):
    def enqueue(self, job: NotificationJob) -> None: ...


class DatabaseNotificationQueue:
    """Writes jobs to the notification_record table polled by the workers."""

    def enqueue(self, job: NotificationJob) -> None:
        db.session.add(NotificationRecord(
            recipient=job.recipient,
            channel=job.channel,
            template=job.template,
            variables_json=json.dumps(job.variables, sort_keys=True),
            priority=job.priority,
            attempt_id=job.attempt_id,
        ))
        db.session.commit()


def _jobs_for(attempt, template: str, email_vars: Dict[str, Any], chat_vars: Dict[str, Any], priority: int) -> List[NotificationJob]:
    jobs = [NotificationJob(attempt.user_email, EMAIL, template, email_vars, priority, attempt.id)]
    if attempt.whatsapp_consent and attempt.phone:
        jobs.append(NotificationJob(attempt.phone, WHATSAPP, template, chat_vars, priority, attempt.id))
    return jobs


def claim_url(base_url: str, token: str) -> str:
    return f"{base_url}/claim/{token}"


def replay_url(base_url: str, rnd, attempt) -> str:
    params = {
        'src': 'retry',
        'ref': base64.urlsafe_b64encode(attempt.user_email.encode('utf-8')).decode('ascii'),
        'pid': attempt.id,
    }
    return f"{base_url}/play/{rnd.slug}?{urlencode(params)}"


def winner_jobs(winner, token: str, base_url: str) -> List[NotificationJob]:
    url = claim_url(base_url, token)
    email_vars = {
        'first_name': winner.first_name,
        'last_name': winner.last_name,
        'completion_time': winner.total_time,
        'claim_token': token,
        'claim_url': url,
    }
    chat_vars = {'first_name': winner.first_name, 'claim_url': url}
    return _jobs_for(winner, WINNER_TEMPLATE, email_vars, chat_vars, PRIORITY_HIGH)


def loser_jobs(attempt, winner, rnd, base_url: str) -> List[NotificationJob]:
    url = replay_url(base_url, rnd, attempt)
    email_vars = {
        'first_name': attempt.first_name,
        'winner_time': winner.total_time,
        'participant_time': attempt.total_time,
        'replay_url': url,
    }
    chat_vars = {'first_name': attempt.first_name, 'replay_url': url}
    return _jobs_for(attempt, LOSER_TEMPLATE, email_vars, chat_vars, PRIORITY_NORMAL)


def dispatch(queue: NotificationQueue, jobs: Iterable[NotificationJob]) -> int:
    """Enqueue every job; failures are logged and left to the queue's retries."""
    sent = 0
    for job in jobs:
        try:
            queue.enqueue(job)
            sent += 1
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                f"[notify-failed] attempt={job.attempt_id} channel={job.channel} template={job.template}"
            )
    return sent
