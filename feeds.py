"""
Feeds, detail views and the dashboard.

Every view reads through a LiveQuery or fetch_all and writes through the
store. Writes never touch local state: the change shows up in the next
snapshot the view's subscription delivers.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta

from auth import Identity
from database import QuerySpec
from exceptions import ConfigurationError, NotAuthorizedError, QueryPreconditionError, StudySyncError
from forms import AnswerForm, DoubtForm, FormState, ResourceForm
from live_query import LiveQuery, Outcome
from logging_config import logger
from multi_fetch import fetch_all
from schemas import ANSWERS, DOUBTS, NOTES, Answer, Doubt, Resource, ResourceType

NEWEST_FIRST = ("created_at", "desc")
OLDEST_FIRST = ("created_at", "asc")

INDEX_HELP = (
    "Could not load data for this tab. This usually happens because a required "
    "database index is missing. Ask an operator to create it (or restart the server "
    "with CREATE_INDEXES_ON_STARTUP=true), wait a few minutes and refresh this page."
)


YOUTUBE_VIDEO_ID = re.compile(r"^.*(youtu\.be/|v/|u/\w/|embed/|watch\?v=|&v=|shorts/)([^#&?]*).*")
EMBED_ERROR = "Could not embed: Invalid YouTube URL."


def youtube_video_id(url: str) -> Optional[str]:
    """The 11 character video id of a YouTube link, or None."""
    match = YOUTUBE_VIDEO_ID.match(url or "")
    if match and len(match.group(2)) == 11:
        return match.group(2)
    return None


# ----------------------- queries -----------------------

def doubts_query() -> QuerySpec:
    return QuerySpec(DOUBTS, order_by=NEWEST_FIRST)


def notes_query() -> QuerySpec:
    return QuerySpec(NOTES, order_by=NEWEST_FIRST)


def answers_query(doubt_id: str) -> QuerySpec:
    return QuerySpec(ANSWERS, (("doubt_id", doubt_id),), order_by=OLDEST_FIRST)


def authored_query(collection: str, uid: str) -> QuerySpec:
    return QuerySpec(collection, (("author_id", uid),), order_by=NEWEST_FIRST)


def doubts_feed(store) -> LiveQuery[Doubt]:
    return LiveQuery(store, doubts_query(), Doubt)


def notes_feed(store) -> LiveQuery[Resource]:
    return LiveQuery(store, notes_query(), Resource)


# ----------------------- writes -----------------------

def post_doubt(store, identity: Identity, form: DoubtForm) -> str:
    return store.create(DOUBTS, {
        "author_id": identity.uid,
        "author_name": identity.display_name,
        "subject": form.subject.value,
        "description": form.description,
        "is_resolved": False,
    })


def post_answer(store, identity: Identity, doubt_id: str, form: AnswerForm) -> str:
    return store.create(ANSWERS, {
        "doubt_id": doubt_id,
        "author_id": identity.uid,
        "author_name": identity.display_name,
        "text": form.text,
    })


def share_resource(store, identity: Identity, form: ResourceForm) -> str:
    doc = {
        "author_id": identity.uid,
        "author_name": identity.display_name,
        "topic": form.topic,
        "subject": form.subject.value,
        "resource_url": form.url,
        "resource_type": form.resource_type.value,
    }
    if form.description:
        doc["description"] = form.description
    return store.create(NOTES, doc)


def can_resolve(doubt: Doubt, identity: Optional[Identity]) -> bool:
    """The resolve button is shown only to the author of an open doubt."""
    return identity is not None and identity.uid == doubt.author_id and not doubt.is_resolved


def resolve_doubt(store, doubt: Doubt, identity: Optional[Identity]) -> None:
    """Mark a doubt resolved. Only ever writes True."""
    if identity is None or identity.uid != doubt.author_id:
        raise NotAuthorizedError("Only the author of this doubt can mark it as resolved.")
    if doubt.is_resolved:
        return
    store.update(DOUBTS, doubt.id, {"is_resolved": True})
    logger.info(f"Doubt {doubt.id} resolved by {identity.uid}")


class DoubtDetail:
    """
    Detail view of one doubt: a live answers list plus the answer and
    resolve mutations.
    """

    def __init__(self, store, doubt: Doubt):
        self.store = store
        self.doubt = doubt
        self.answers: LiveQuery[Answer] = LiveQuery(store, answers_query(doubt.id), Answer)

    def start(self) -> "DoubtDetail":
        self.answers.start()
        return self

    def cancel(self) -> None:
        self.answers.cancel()

    async def __aenter__(self) -> "DoubtDetail":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    async def submit_answer(self, identity: Identity, values: Dict[str, Any]) -> FormState[AnswerForm]:
        state = FormState(AnswerForm, values)
        await state.submit(lambda form: post_answer(self.store, identity, self.doubt.id, form))
        return state

    def can_resolve(self, identity: Optional[Identity]) -> bool:
        return can_resolve(self.doubt, identity)

    def resolve(self, identity: Optional[Identity]) -> None:
        resolve_doubt(self.store, self.doubt, identity)


# ----------------------- presentation -----------------------

def posted_ago(created_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """'3 minutes ago' style label."""
    if created_at is None:
        return "just now"
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    delta = relativedelta(now, created_at)
    for unit in ("years", "months", "days", "hours", "minutes"):
        value = getattr(delta, unit)
        if value > 0:
            return f"{value} {unit[:-1] if value == 1 else unit} ago"
    return "just now"


def doubt_card(doubt: Doubt, identity: Optional[Identity] = None) -> Dict[str, Any]:
    card = doubt.model_dump(mode="json")
    card["posted_ago"] = posted_ago(doubt.created_at)
    card["can_resolve"] = can_resolve(doubt, identity)
    return card


def answer_card(answer: Answer) -> Dict[str, Any]:
    card = answer.model_dump(mode="json")
    card["posted_ago"] = posted_ago(answer.created_at)
    return card


def resource_card(resource: Resource) -> Dict[str, Any]:
    card = resource.model_dump(mode="json")
    card["posted_ago"] = posted_ago(resource.created_at)
    video_id = youtube_video_id(resource.resource_url) if resource.resource_type == ResourceType.YOUTUBE else None
    card["video_id"] = video_id
    card["embed_url"] = f"https://www.youtube.com/embed/{video_id}" if video_id else None
    # drive links are opened, not embedded
    card["embed_error"] = EMBED_ERROR if resource.resource_type == ResourceType.YOUTUBE and not video_id else None
    return card


# ----------------------- dashboard -----------------------

@dataclass
class DashboardTab:
    key: str
    title: str
    empty_message: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[StudySyncError] = None

    @property
    def message(self) -> Optional[str]:
        if self.error is not None:
            if isinstance(self.error, QueryPreconditionError):
                return INDEX_HELP
            return f"Could not load data for this tab: {self.error.message}"
        if not self.items:
            return self.empty_message
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "title": self.title,
            "items": self.items,
            "message": self.message,
            "error": self.error.to_dict() if self.error else None,
        }


DASHBOARD_TABS = (
    ("doubts", DOUBTS, Doubt, "My Posted Doubts", "You haven't posted any doubts yet."),
    ("notes", NOTES, Resource, "My Shared Resources", "You haven't shared any resources yet."),
    ("answers", ANSWERS, Answer, "My Answers", "You haven't answered any doubts yet."),
)

_CARDS = {
    "doubts": lambda record, identity: doubt_card(record, identity),
    "notes": lambda record, identity: resource_card(record),
    "answers": lambda record, identity: answer_card(record),
}


async def load_dashboard(store, identity: Identity) -> List[DashboardTab]:
    """Fetch the three activity tabs of `identity` independently."""
    outcomes: Dict[str, Outcome] = await fetch_all(
        store,
        {key: authored_query(collection, identity.uid) for key, collection, _, _, _ in DASHBOARD_TABS},
        {key: model for key, _, model, _, _ in DASHBOARD_TABS},
    )
    tabs = []
    for outcome in outcomes.values():
        # an unconfigured store blocks the whole page, not one tab
        if isinstance(outcome.error, ConfigurationError):
            raise outcome.error
    for key, _, _, title, empty_message in DASHBOARD_TABS:
        outcome = outcomes[key]
        tab = DashboardTab(key=key, title=title, empty_message=empty_message, error=outcome.error)
        if outcome.ok:
            tab.items = [_CARDS[key](record, identity) for record in outcome.records]
        tabs.append(tab)
    return tabs
