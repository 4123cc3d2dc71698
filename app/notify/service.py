"""Owner notifications for moderation actions.

Sending is fire-and-forget: the task is queued and any failure to queue it is
logged, never raised into the request that triggered it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

log = logging.getLogger("app")

SUBJECTS = {
    "project_unpublished": "Your project has been unpublished: ",
    "project_deleted": "Your project has been deleted: ",
}

BODIES = {
    "project_unpublished": "<p>One of your projects has been unpublished by a site ",
    "project_deleted": "<p>One of your projects has been deleted by a site ",
}


@dataclass(frozen=True)
class Notice:
    to: str
    subject: str
    html: str


class Notifier(Protocol):
    def project_unpublished(self, *, email: str | None, projectname: str, actor_role: str, reason: str) -> None: ...

    def project_deleted(self, *, email: str | None, projectname: str, actor_role: str, reason: str) -> None: ...


def build_notice(kind: str, *, email: str, projectname: str, actor_role: str, reason: str) -> Notice:
    return Notice(
        to=email,
        subject=SUBJECTS[kind] + projectname,
        html=f"{BODIES[kind]}{actor_role}.</p><p>{reason}</p>",
    )


class CeleryNotifier:
    def project_unpublished(self, *, email: str | None, projectname: str, actor_role: str, reason: str) -> None:
        self._enqueue("project_unpublished", email=email, projectname=projectname, actor_role=actor_role, reason=reason)

    def project_deleted(self, *, email: str | None, projectname: str, actor_role: str, reason: str) -> None:
        self._enqueue("project_deleted", email=email, projectname=projectname, actor_role=actor_role, reason=reason)

    def _enqueue(self, kind: str, *, email: str | None, projectname: str, actor_role: str, reason: str) -> None:
        if not email:
            log.info("Notice %s for %s skipped: owner has no email", kind, projectname)
            return
        notice = build_notice(kind, email=email, projectname=projectname, actor_role=actor_role, reason=reason)
        try:
            from app.tasks.notify_tasks import send_owner_notice

            send_owner_notice.delay(to=notice.to, subject=notice.subject, html=notice.html)
        except Exception as e:
            log.warning("Could not queue %s notice for %s: %s", kind, projectname, str(e))
