"""The ``event`` and ``group`` plugins that ship with agora."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import BadRequest, NotFound
from .plugins import (
    AddressPattern,
    Plugin,
    PluginActivityType,
    PluginHooks,
    PluginPermission,
    PluginRegistry,
    ValidationResult,
    format_validation_errors,
)
from .roles import Role

if TYPE_CHECKING:  # pragma: no cover
    from .activities import Activity
    from .contexts import Context
    from .memberships import Membership, SQLiteMembershipStore


logger = logging.getLogger(__name__)

ACTIVE_MEMBER_WINDOW = timedelta(days=30)

_OWNER_ADMIN = (Role.OWNER, Role.ADMIN)
_STAFF = (Role.OWNER, Role.ADMIN, Role.MODERATOR)


class PluginModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -- event -----------------------------------------------------------------


class EventCoordinates(PluginModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class EventLocation(PluginModel):
    name: str = Field(min_length=1, max_length=200)
    address: Optional[str] = Field(default=None, max_length=500)
    coordinates: Optional[EventCoordinates] = None
    map_url: Optional[str] = None
    is_public: bool = False


class EventData(PluginModel):
    start_at: datetime
    end_at: datetime
    timezone: str = "Asia/Seoul"
    is_all_day: bool = False
    location_type: Literal["physical", "online", "hybrid"]
    location: Optional[EventLocation] = None
    online_url: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=1)
    registration_deadline: Optional[datetime] = None
    cost: float = Field(default=0, ge=0)
    currency: str = "KRW"
    payment_required: bool = False
    rsvp_options: List[Literal["attending", "considering", "not_attending"]] = Field(
        default_factory=lambda: ["attending", "not_attending"]
    )
    requires_approval: bool = False
    screening_questions: Optional[List[str]] = Field(default=None, max_length=5)
    has_waitlist: bool = True
    allow_guest_plus: bool = False
    max_guests_per_rsvp: int = Field(default=0, ge=0, le=10)
    tags: List[str] = Field(default_factory=list, max_length=10)
    rules: Optional[str] = Field(default=None, max_length=5000)


class EventMemberData(PluginModel):
    rsvp_status: Literal["pending", "attending", "considering", "not_attending", "waitlist", "cancelled"] = "pending"
    rsvp_at: Optional[datetime] = None
    payment_status: Literal["pending", "paid", "refunded", "not_required"] = "not_required"
    payment_id: Optional[str] = None
    checked_in_at: Optional[datetime] = None
    guest_count: int = Field(default=0, ge=0)
    screening_answers: Optional[List[str]] = None
    notes: Optional[str] = Field(default=None, max_length=500)


def default_event_data() -> Dict[str, Any]:
    now = _utc_now()
    return {
        "startAt": _iso(now),
        "endAt": _iso(now + timedelta(hours=3)),
        "timezone": "Asia/Seoul",
        "isAllDay": False,
        "locationType": "physical",
        "cost": 0,
        "currency": "KRW",
        "paymentRequired": False,
        "rsvpOptions": ["attending", "not_attending"],
        "requiresApproval": False,
        "hasWaitlist": True,
        "allowGuestPlus": False,
        "maxGuestsPerRsvp": 0,
        "tags": [],
    }


async def _validate_event_data(data: Dict[str, Any], context: "Context") -> ValidationResult:
    try:
        event = EventData.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(False, tuple(format_validation_errors(exc)))

    errors = []
    if event.end_at <= event.start_at:
        errors.append("End date must be after start date")
    if event.registration_deadline is not None and event.registration_deadline > event.start_at:
        errors.append("Registration deadline must be before event start")
    if event.location_type in ("physical", "hybrid") and event.location is None:
        errors.append("Physical location required for in-person events")
    if event.location_type in ("online", "hybrid") and not event.online_url:
        errors.append("Online URL required for virtual events")
    return ValidationResult(not errors, tuple(errors))


def create_event_plugin(memberships: "SQLiteMembershipStore") -> Plugin:
    def _rsvp_status(context_id: str, user_id: str) -> Optional[str]:
        membership = memberships.get(context_id, user_id)
        if membership is None:
            return None
        return membership.plugin_section("event").get("rsvpStatus")

    async def hosts(context_id: str, user_id: str) -> bool:
        membership = memberships.get(context_id, user_id)
        return membership is not None and membership.approved and membership.role in _OWNER_ADMIN

    async def attendees(context_id: str, user_id: str) -> bool:
        membership = memberships.get(context_id, user_id)
        if membership is None or not membership.approved:
            return False
        return membership.plugin_section("event").get("rsvpStatus") == "attending"

    async def waitlist(context_id: str, user_id: str) -> bool:
        return _rsvp_status(context_id, user_id) == "waitlist"

    async def on_context_create(context: "Context", data: Dict[str, Any]) -> None:
        logger.info("event created: %s (start=%s end=%s)", context.name, data.get("startAt"), data.get("endAt"))

    async def on_context_update(context: "Context", data: Dict[str, Any], previous: Dict[str, Any]) -> None:
        time_changed = data.get("startAt") != previous.get("startAt") or data.get("endAt") != previous.get("endAt")
        location_changed = data.get("locationType") != previous.get("locationType") or data.get(
            "location"
        ) != previous.get("location")
        if time_changed or location_changed:
            logger.info(
                "event updated: %s (time_changed=%s location_changed=%s)",
                context.name,
                time_changed,
                location_changed,
            )

    async def on_member_leave(membership: "Membership", context: "Context") -> None:
        logger.info(
            "member %s left event %s (rsvp=%s)",
            membership.user_id,
            context.id,
            membership.plugin_section("event").get("rsvpStatus"),
        )

    return Plugin(
        id="event",
        name="Event",
        description="Time-bounded gatherings with RSVP, capacity, and location management",
        version="1.0.0",
        context_types=("EVENT",),
        data_schema=EventData,
        default_data=default_event_data(),
        member_schema=EventMemberData,
        activity_types=[
            PluginActivityType("RSVP", "RSVP", "calendar-check", "User RSVPed to event"),
            PluginActivityType("CHECKIN", "Check-in", "map-pin", "User checked in at event"),
            PluginActivityType("EVENT_UPDATE", "Event Update", "bell", "Host posted an update about the event"),
        ],
        address_patterns=[
            AddressPattern("context:{id}:hosts", "Event Hosts", hosts),
            AddressPattern("context:{id}:attendees", "Confirmed Attendees", attendees),
            AddressPattern("context:{id}:waitlist", "Waitlisted", waitlist),
        ],
        hooks=PluginHooks(
            on_context_create=on_context_create,
            on_context_update=on_context_update,
            on_member_leave=on_member_leave,
            validate_data=_validate_event_data,
        ),
        permissions=[
            PluginPermission("manage_rsvps", "Manage RSVPs", "Approve, reject, or modify attendee RSVPs", _OWNER_ADMIN),
            PluginPermission("send_updates", "Send Updates", "Post event updates to attendees", _STAFF),
            PluginPermission("check_in", "Check In Attendees", "Mark attendees as arrived at the event", _STAFF),
            PluginPermission(
                "view_attendee_info",
                "View Attendee Info",
                "See detailed attendee information and screening answers",
                _OWNER_ADMIN,
            ),
            PluginPermission(
                "manage_waitlist", "Manage Waitlist", "Promote users from waitlist or reorder priority", _OWNER_ADMIN
            ),
        ],
    )


def record_check_in(memberships: "SQLiteMembershipStore", context_id: str, user_id: str) -> "Membership":
    """Stamp ``checkedInAt`` on the member's event data."""

    membership = memberships.get(context_id, user_id)
    if membership is None:
        raise NotFound("Membership not found")
    if not membership.approved:
        raise BadRequest("Only approved members can be checked in")
    plugin_data = dict(membership.plugin_data)
    plugin_data["event"] = {**membership.plugin_section("event"), "checkedInAt": _iso(_utc_now())}
    return memberships.update(context_id, user_id, plugin_data=plugin_data)


# -- group -----------------------------------------------------------------


class ModerationSettings(PluginModel):
    require_post_approval: bool = False
    allowed_media_types: List[Literal["image", "video", "audio", "document"]] = Field(
        default_factory=lambda: ["image"]
    )
    max_attachments_per_post: int = Field(default=4, ge=0, le=10)
    slow_mode_seconds: int = Field(default=0, ge=0, le=86400)
    min_member_age_minutes: int = Field(default=0, ge=0)
    enable_auto_mod: bool = False
    banned_words: List[str] = Field(default_factory=list, max_length=100)
    link_whitelist: List[str] = Field(default_factory=list, max_length=50)


class CustomRole(PluginModel):
    name: str = Field(max_length=30)
    color: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")
    permissions: List[str] = Field(default_factory=list)


class GroupData(PluginModel):
    group_type: Literal["community", "interest", "regional", "species", "convention", "other"] = "community"
    category: Optional[str] = Field(default=None, max_length=50)
    tags: List[str] = Field(default_factory=list, max_length=10)
    moderation: ModerationSettings = Field(default_factory=ModerationSettings)
    posting_guidelines: Optional[str] = Field(default=None, max_length=5000)
    pinned_rules: Optional[str] = Field(default=None, max_length=2000)
    enable_polls: bool = True
    enable_events: bool = True
    enable_announcements: bool = True
    welcome_message: Optional[str] = Field(default=None, max_length=1000)
    custom_roles: List[CustomRole] = Field(default_factory=list, max_length=10)
    is_discoverable: bool = True
    required_profile_fields: List[str] = Field(default_factory=list)


class GroupMemberData(PluginModel):
    custom_role: Optional[str] = Field(default=None, max_length=30)
    muted_until: Optional[datetime] = None
    warning_count: int = Field(default=0, ge=0)
    last_post_at: Optional[datetime] = None
    introduction_posted: bool = False


def create_group_plugin(memberships: "SQLiteMembershipStore") -> Plugin:
    async def staff(context_id: str, user_id: str) -> bool:
        membership = memberships.get(context_id, user_id)
        return membership is not None and membership.approved and membership.role in _STAFF

    async def active(context_id: str, user_id: str) -> bool:
        membership = memberships.get(context_id, user_id)
        if membership is None or not membership.approved:
            return False
        last_post_at = _parse_iso(membership.plugin_section("group").get("lastPostAt"))
        if last_post_at is None:
            return False
        return last_post_at >= _utc_now() - ACTIVE_MEMBER_WINDOW

    async def on_member_join(membership: "Membership", context: "Context") -> None:
        welcome = context.plugin_config("group").get("welcomeMessage")
        if welcome:
            logger.info("member %s joined group %s; welcome message pending", membership.user_id, context.id)

    async def on_activity_create(activity: "Activity", context: "Context") -> None:
        membership = memberships.get(context.id, activity.actor_id)
        if membership is None or not membership.approved:
            return
        section = {**membership.plugin_section("group"), "lastPostAt": _iso(_utc_now())}
        if activity.type == "INTRODUCTION":
            section["introductionPosted"] = True
        plugin_data = dict(membership.plugin_data)
        plugin_data["group"] = section
        memberships.update(context.id, activity.actor_id, plugin_data=plugin_data)

    return Plugin(
        id="group",
        name="Group",
        description="Community groups with moderation, custom roles, and posting rules",
        version="1.0.0",
        context_types=("GROUP", "CONVENTION"),
        data_schema=GroupData,
        default_data=GroupData().model_dump(mode="json", by_alias=True, exclude_none=True),
        member_schema=GroupMemberData,
        activity_types=[
            PluginActivityType("ANNOUNCEMENT", "Announcement", "megaphone", "Important group announcement"),
            PluginActivityType("POLL", "Poll", "bar-chart-2", "Group poll or vote"),
            PluginActivityType("INTRODUCTION", "Introduction", "user-plus", "New member introduction"),
        ],
        address_patterns=[
            AddressPattern("context:{id}:staff", "Group Staff", staff),
            AddressPattern("context:{id}:active", "Active Members", active),
        ],
        hooks=PluginHooks(on_member_join=on_member_join, on_activity_create=on_activity_create),
        permissions=[
            PluginPermission(
                "post_announcement", "Post Announcements", "Create announcements that notify all members", _OWNER_ADMIN
            ),
            PluginPermission("create_poll", "Create Polls", "Create polls for group voting", _STAFF),
            PluginPermission("moderate_posts", "Moderate Posts", "Approve, reject, or remove member posts", _STAFF),
            PluginPermission("manage_roles", "Manage Custom Roles", "Create and assign custom roles", _OWNER_ADMIN),
            PluginPermission("issue_warnings", "Issue Warnings", "Give warnings for rule violations", _STAFF),
            PluginPermission("mute_members", "Mute Members", "Temporarily prevent members from posting", _STAFF),
            PluginPermission("view_mod_logs", "View Moderation Logs", "Access logs of moderation actions", _OWNER_ADMIN),
        ],
    )


def initialize_plugins(registry: PluginRegistry, memberships: "SQLiteMembershipStore") -> None:
    registry.register(create_event_plugin(memberships))
    registry.register(create_group_plugin(memberships))
    logger.info("registered plugins: %s", ", ".join(registry.ids()))
