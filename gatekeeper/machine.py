"""Member verification state machine.

``decide`` is a pure function of the member's current status and a
normalized event. Guards are evaluated by the caller and carried in the
event, so identical inputs always produce identical decisions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from .models import MemberStatus, MessageKind, MessageRef, PendingMessage


class RejoinPolicy(StrEnum):
    RESET = "reset"
    ADMIN = "admin"


class CallbackAction(StrEnum):
    NEW_MEMBER_ACCEPT = "new_member_accept"
    NEW_MEMBER_KICK = "new_member_kick"

    def custom_id(self, target_id: int) -> str:
        return f"{self.value}|{target_id}"

    def matches(self, data: str) -> bool:
        return data == self.value or data.startswith(f"{self.value}|")


# ----- Events -----
@dataclass(frozen=True, slots=True)
class Join:
    group_id: int
    member_id: int
    is_bot: bool = False
    notice: MessageRef | None = None


@dataclass(frozen=True, slots=True)
class Left:
    group_id: int
    member_id: int
    notice: MessageRef | None = None


@dataclass(frozen=True, slots=True)
class Message:
    group_id: int
    member_id: int
    message: MessageRef
    text: str = ""


@dataclass(frozen=True, slots=True)
class MembershipChanged:
    group_id: int
    target_id: int
    old_role: str
    new_role: str
    targets_bot: bool = False


@dataclass(frozen=True, slots=True)
class VerificationCallback:
    group_id: int
    member_id: int
    code: str
    # Set by the caller once the code has been exchanged; None means failure.
    provider_id: int | None = None


@dataclass(frozen=True, slots=True)
class AdminDecision:
    group_id: int
    member_id: int
    action: CallbackAction
    admin_id: int


@dataclass(frozen=True, slots=True)
class LinkRequest:
    group_id: int
    member_id: int


@dataclass(frozen=True, slots=True)
class DeadlineExpired:
    message: PendingMessage
    age: float
    timeout: float

    @property
    def group_id(self) -> int:
        return self.message.group_id

    @property
    def member_id(self) -> int:
        return self.message.member_external_id


Event = (
    Join
    | Left
    | Message
    | MembershipChanged
    | VerificationCallback
    | AdminDecision
    | LinkRequest
    | DeadlineExpired
)


# ----- Actions -----
@dataclass(frozen=True, slots=True)
class DeleteMessage:
    message: MessageRef


@dataclass(frozen=True, slots=True)
class SendGreeting:
    pass


@dataclass(frozen=True, slots=True)
class SendLoginLink:
    pass


@dataclass(frozen=True, slots=True)
class SetStatus:
    status: MemberStatus
    expected: MemberStatus | None


@dataclass(frozen=True, slots=True)
class RecordVerification:
    provider_id: int


@dataclass(frozen=True, slots=True)
class RemoveMember:
    pass


@dataclass(frozen=True, slots=True)
class ClearPending:
    pass


@dataclass(frozen=True, slots=True)
class ReleaseGreeting:
    pass


Action = (
    DeleteMessage
    | SendGreeting
    | SendLoginLink
    | SetStatus
    | RecordVerification
    | RemoveMember
    | ClearPending
    | ReleaseGreeting
)


class Outcome(StrEnum):
    IGNORED = "ignored"
    UPDATED = "updated"
    VERIFIED = "verified"
    LOGIN_FAILED = "login_failed"
    UNEXPECTED_STATUS = "unexpected_status"
    CONFLICT = "conflict"


@dataclass(frozen=True, slots=True)
class Decision:
    status: MemberStatus | None
    actions: tuple[Action, ...] = ()
    feedback: str | None = None
    outcome: Outcome = Outcome.UPDATED


FEEDBACK_VERIFIED = "Successfully authorized, you can close this page."
FEEDBACK_LOGIN_FAILED = "Login failed, please try again from the link in the chat."
FEEDBACK_NOT_JUST_JOINED = "user status is not just joined"
FEEDBACK_CONFLICT = "Member status changed while handling the request, please retry."


def unexpected_status(status: MemberStatus | None) -> str:
    return f"You have an unexpected status `{status}`"


def _notice(notice: MessageRef | None) -> tuple[Action, ...]:
    return (DeleteMessage(notice),) if notice is not None else ()


def decide(
    status: MemberStatus | None,
    event: Event,
    *,
    policy: RejoinPolicy = RejoinPolicy.RESET,
) -> Decision:
    """Map ``(status, event)`` to the next status and the actions to run.

    ``status`` is None when the member record did not exist before the
    event (it was just created by the caller).
    """
    match event:
        case Join():
            return _on_join(status, event, policy)
        case Left():
            return Decision(
                status,
                _notice(event.notice) + (ClearPending(), ReleaseGreeting()),
            )
        case Message():
            return _on_message(status, event)
        case MembershipChanged():
            return Decision(status, outcome=Outcome.IGNORED)
        case VerificationCallback():
            return _on_verification(status, event)
        case AdminDecision():
            return _on_admin_decision(status, event, policy)
        case LinkRequest():
            if status is MemberStatus.JUST_JOINED:
                return Decision(status, (SendLoginLink(),))
            return Decision(
                status,
                feedback=unexpected_status(status),
                outcome=Outcome.UNEXPECTED_STATUS,
            )
        case DeadlineExpired():
            return _on_deadline(status, event)
    raise TypeError(f"unsupported event {event!r}")


def _on_join(
    status: MemberStatus | None, event: Join, policy: RejoinPolicy
) -> Decision:
    if event.is_bot:
        return Decision(status, outcome=Outcome.IGNORED)

    notice = _notice(event.notice)
    if status is None or status is MemberStatus.JUST_JOINED:
        return Decision(MemberStatus.JUST_JOINED, notice + (SendGreeting(),))
    if status is MemberStatus.KICKED:
        if policy is RejoinPolicy.RESET:
            return Decision(
                MemberStatus.JUST_JOINED,
                notice
                + (
                    SetStatus(MemberStatus.JUST_JOINED, expected=MemberStatus.KICKED),
                    SendGreeting(),
                ),
            )
        return Decision(MemberStatus.KICKED, notice + (SendGreeting(),))
    # Active and banned members keep their status on rejoin.
    return Decision(status, notice)


def _on_message(status: MemberStatus | None, event: Message) -> Decision:
    if status in (MemberStatus.JUST_JOINED, MemberStatus.KICKED):
        return Decision(status, (DeleteMessage(event.message),))
    # A sender with no record predates the bot and is treated as active.
    if status is None:
        return Decision(MemberStatus.ACTIVE, outcome=Outcome.IGNORED)
    return Decision(status, outcome=Outcome.IGNORED)


def _on_verification(
    status: MemberStatus | None, event: VerificationCallback
) -> Decision:
    if status is not MemberStatus.JUST_JOINED:
        return Decision(
            status,
            feedback=unexpected_status(status),
            outcome=Outcome.UNEXPECTED_STATUS,
        )
    if event.provider_id is None:
        return Decision(
            status, feedback=FEEDBACK_LOGIN_FAILED, outcome=Outcome.LOGIN_FAILED
        )
    return Decision(
        MemberStatus.ACTIVE,
        (RecordVerification(event.provider_id), ClearPending()),
        feedback=FEEDBACK_VERIFIED,
        outcome=Outcome.VERIFIED,
    )


def _on_admin_decision(
    status: MemberStatus | None, event: AdminDecision, policy: RejoinPolicy
) -> Decision:
    reviewable = status is MemberStatus.JUST_JOINED or (
        status is MemberStatus.KICKED and policy is RejoinPolicy.ADMIN
    )
    if not reviewable:
        return Decision(
            status,
            feedback=FEEDBACK_NOT_JUST_JOINED,
            outcome=Outcome.UNEXPECTED_STATUS,
        )
    if event.action is CallbackAction.NEW_MEMBER_ACCEPT:
        return Decision(
            MemberStatus.ACTIVE,
            (SetStatus(MemberStatus.ACTIVE, expected=status), ClearPending()),
            feedback="Member accepted",
        )
    return Decision(
        MemberStatus.KICKED,
        (
            SetStatus(MemberStatus.KICKED, expected=status),
            RemoveMember(),
            ClearPending(),
        ),
        feedback="Member kicked",
    )


def _on_deadline(status: MemberStatus | None, event: DeadlineExpired) -> Decision:
    if event.message.kind is MessageKind.REVIEW and status is MemberStatus.KICKED:
        return _on_review_deadline(status, event)
    if status is not MemberStatus.JUST_JOINED:
        return Decision(status, (DeleteMessage(event.message.ref),))
    if event.age <= event.timeout:
        return Decision(status, outcome=Outcome.IGNORED)
    return Decision(
        MemberStatus.KICKED,
        (
            SetStatus(MemberStatus.KICKED, expected=MemberStatus.JUST_JOINED),
            RemoveMember(),
            DeleteMessage(event.message.ref),
        ),
    )


def _on_review_deadline(status: MemberStatus, event: DeadlineExpired) -> Decision:
    """An unanswered admin review removes the rejoined member again.

    The status write keeps ``Kicked`` but fails if an admin decided in the
    meantime, and it frees the greeting claim for the next rejoin.
    """
    if event.age <= event.timeout:
        return Decision(status, outcome=Outcome.IGNORED)
    return Decision(
        MemberStatus.KICKED,
        (
            SetStatus(MemberStatus.KICKED, expected=MemberStatus.KICKED),
            RemoveMember(),
            DeleteMessage(event.message.ref),
        ),
    )


__all__ = [
    "Action",
    "AdminDecision",
    "CallbackAction",
    "ClearPending",
    "Decision",
    "DeadlineExpired",
    "DeleteMessage",
    "Event",
    "FEEDBACK_CONFLICT",
    "FEEDBACK_LOGIN_FAILED",
    "FEEDBACK_NOT_JUST_JOINED",
    "FEEDBACK_VERIFIED",
    "Join",
    "Left",
    "LinkRequest",
    "MembershipChanged",
    "Message",
    "Outcome",
    "RecordVerification",
    "RejoinPolicy",
    "ReleaseGreeting",
    "RemoveMember",
    "SendGreeting",
    "SendLoginLink",
    "SetStatus",
    "VerificationCallback",
    "decide",
]
