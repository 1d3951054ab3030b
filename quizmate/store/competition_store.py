"""
Competition store.

Holds what one viewer currently sees of a competition (the competition row,
its participants, chat, their matchmaking ticket, history) and performs every
competition write on that viewer's behalf. Instances are created with their
collaborators injected (engine, change feed, question service, caller
identity) and have an explicit ``init`` / ``teardown`` lifecycle; teardown
closes every realtime subscription opened through the store.

Every operation records a failure message in ``error`` and re-raises it.
Nothing is retried.
"""
import logging
import re
import secrets
import string
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, func, select

from ..config import (
    COMPETITION_CODE_LENGTH,
    DEFAULT_MAX_PARTICIPANTS,
    MAX_CHAT_MESSAGE_LENGTH,
    MIN_PARTICIPANTS_TO_START,
)
from ..errors import (
    APIError,
    AuthenticationError,
    BackendError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from ..models.chat import ChatMessage
from ..models.competition import (
    Competition,
    CompetitionInvite,
    CompetitionParticipant,
    CompetitionStatus,
    CompetitionType,
    InviteStatus,
    ParticipantStatus,
)
from ..models.queue import QueueStatus, RandomQueueEntry
from ..models.quiz import QuizHistory
from ..models.result import CompetitionResult
from ..models.user import User
from ..realtime import ChangeEvent, ChangeFeed, DELETE, INSERT, UPDATE
from ..services.grading import dump_questions
from ..services.lifecycle import (
    transition_competition,
    transition_participant,
    transition_ticket,
)
from ..services.preferences import QuizPreferences
from ..services.question_service import QuestionServiceClient
from ..services.ranking import live_leaderboard
from ..services.stats import OverallStats, calculate_overall_stats

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
ACTIVE_QUEUE_STATUSES = (QueueStatus.WAITING.value, QueueStatus.MATCHED.value)
VISIBLE_PARTICIPANT_STATUSES = (ParticipantStatus.JOINED.value, ParticipantStatus.COMPLETED.value)
OPEN_COMPETITION_STATUSES = (CompetitionStatus.WAITING.value, CompetitionStatus.ACTIVE.value)

Unsubscribe = Callable[[], None]
ChangeListener = Callable[[ChangeEvent], None]


def generate_competition_code(length: int = COMPETITION_CODE_LENGTH) -> str:
    """Random uppercase alphanumeric join code."""
    chars = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(chars) for _ in range(length))


class CompetitionStore:
    def __init__(
        self,
        bind: Engine,
        feed: ChangeFeed,
        question_service: Optional[QuestionServiceClient] = None,
        user_id: Optional[int] = None,
        user_email: Optional[str] = None,
        code_factory: Callable[[], str] = generate_competition_code
    ):
        self.bind = bind
        self.feed = feed
        self.question_service = question_service
        self.user_id = user_id
        self.user_email = user_email.lower() if user_email else None
        self.code_factory = code_factory

        self.current_competition: Optional[Competition] = None
        self.participants: List[CompetitionParticipant] = []
        self.profiles: Dict[int, str] = {}
        self.chat_messages: List[ChatMessage] = []
        self.queue_entry: Optional[RandomQueueEntry] = None
        self.user_competitions: List[Competition] = []
        self.user_active_competitions: List[Competition] = []
        self.pending_invites: List[CompetitionInvite] = []
        self.competition_results: List[CompetitionResult] = []
        self.competition_results_history: List[CompetitionResult] = []
        self.overall_stats: Optional[OverallStats] = None
        self.is_loading = False
        self.error: Optional[str] = None

        self.initialized = False
        self._unsubscribers: List[Unsubscribe] = []

    # Lifecycle

    def init(self) -> "CompetitionStore":
        self.initialized = True
        return self

    def teardown(self) -> None:
        """Close every subscription opened through this store and drop state."""
        for unsubscribe in list(self._unsubscribers):
            unsubscribe()
        self._unsubscribers.clear()
        self.clear_current_competition()
        self.initialized = False

    @property
    def open_subscriptions(self) -> int:
        return len(self._unsubscribers)

    # Helpers

    def _session(self) -> Session:
        # Rows are handed out after the session closes
        return Session(self.bind, expire_on_commit=False)

    @contextmanager
    def _operation(self, description: str):
        self.is_loading = True
        self.error = None
        try:
            yield
        except APIError as exc:
            self.error = exc.message
            logger.warning("Failed to %s: %s", description, exc.message)
            raise
        except SQLAlchemyError as exc:
            self.error = f"Failed to {description}"
            logger.exception("Database error while trying to %s", description)
            raise BackendError(self.error) from exc
        finally:
            self.is_loading = False

    def _require_user(self, action: str) -> int:
        if self.user_id is None:
            raise AuthenticationError(f"User not authenticated. Please log in to {action}.")
        return self.user_id

    def _publish(self, event_type: str, *rows) -> None:
        for row in rows:
            self.feed.publish_row(event_type, row)

    def _get_competition(self, db: Session, competition_id: int) -> Competition:
        competition = db.get(Competition, competition_id)
        if competition is None:
            raise NotFoundError("Competition not found.", code=ErrorCode.COMPETITION_NOT_FOUND)
        return competition

    def _get_participant(self, db: Session, competition_id: int, user_id: int) -> Optional[CompetitionParticipant]:
        return db.exec(
            select(CompetitionParticipant).where(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.user_id == user_id
            )
        ).first()

    def _require_participant(self, db: Session, competition_id: int, user_id: int) -> CompetitionParticipant:
        participant = self._get_participant(db, competition_id, user_id)
        if participant is None:
            raise ForbiddenError("You are not a participant in this competition.")
        return participant

    def _require_creator(self, competition: Competition, user_id: int, action: str) -> None:
        if competition.creator_id != user_id:
            raise ForbiddenError(f"Only the creator can {action} this competition.")

    # Competition

    def load_competition(self, competition_id: int) -> Competition:
        with self._operation("load competition"):
            with self._session() as db:
                competition = self._get_competition(db, competition_id)
            self.current_competition = competition
            return competition

    def create_competition(
        self,
        preferences: Union[QuizPreferences, dict],
        title: str,
        description: str = "",
        type: str = CompetitionType.PRIVATE.value,
        emails: Optional[Iterable[str]] = None,
        max_participants: int = DEFAULT_MAX_PARTICIPANTS
    ) -> int:
        """Create a waiting competition with the caller as its first participant."""
        with self._operation("create competition"):
            user_id = self._require_user("create a competition")
            if not title or not title.strip():
                raise ValidationError("Competition title is required.")
            if type not in (CompetitionType.PRIVATE.value, CompetitionType.RANDOM.value):
                raise ValidationError(f"Unknown competition type '{type}'.")
            if isinstance(preferences, dict):
                preferences = QuizPreferences(**preferences)

            with self._session() as db:
                # Sample until a code is free; collisions are rare, not impossible
                while True:
                    code = self.code_factory()
                    taken = db.exec(
                        select(Competition.id).where(Competition.competition_code == code)
                    ).first()
                    if taken is None:
                        break

                competition = Competition(
                    title=title.strip(),
                    description=description or "",
                    competition_code=code,
                    type=type,
                    quiz_preferences=preferences.model_dump(),
                    status=CompetitionStatus.WAITING.value,
                    max_participants=max_participants,
                    creator_id=user_id
                )
                db.add(competition)
                db.flush()

                creator = CompetitionParticipant(
                    competition_id=competition.id,
                    user_id=user_id,
                    status=ParticipantStatus.JOINED.value
                )
                db.add(creator)
                invites = self._add_invites(db, competition, user_id, emails or [])
                db.commit()

            logger.info("User %s created competition %s (%s)", user_id, competition.id, code)
            self._publish(INSERT, competition, creator, *invites)
            self.current_competition = competition
            return competition.id

    def join_competition(self, competition_code: str) -> Competition:
        """Join a waiting competition by code. Joining twice is a no-op."""
        with self._operation("join competition"):
            user_id = self._require_user("join a competition")
            code = (competition_code or "").strip().upper()

            with self._session() as db:
                competition = db.exec(
                    select(Competition).where(Competition.competition_code == code)
                ).first()
                if competition is None:
                    raise NotFoundError(
                        "Competition not found or invalid code.",
                        code=ErrorCode.COMPETITION_NOT_FOUND
                    )
                if competition.status != CompetitionStatus.WAITING:
                    raise ValidationError(
                        "This competition has already started or ended.",
                        code=ErrorCode.ALREADY_STARTED
                    )

                existing = self._get_participant(db, competition.id, user_id)
                if existing is not None:
                    if existing.status == ParticipantStatus.DECLINED:
                        raise ValidationError("You have left this competition.")
                    self.current_competition = competition
                    return competition

                joined = db.exec(
                    select(func.count(CompetitionParticipant.id)).where(
                        CompetitionParticipant.competition_id == competition.id,
                        col(CompetitionParticipant.status).in_(VISIBLE_PARTICIPANT_STATUSES)
                    )
                ).one()
                if joined >= competition.max_participants:
                    raise ValidationError("This competition is full.", code=ErrorCode.COMPETITION_FULL)

                participant = CompetitionParticipant(
                    competition_id=competition.id,
                    user_id=user_id,
                    status=ParticipantStatus.JOINED.value
                )
                db.add(participant)
                accepted = self._accept_pending_invite(db, competition.id)
                try:
                    db.commit()
                except IntegrityError:
                    # A concurrent join by the same user won the insert
                    db.rollback()
                    self.current_competition = competition
                    return competition

            self._publish(INSERT, participant)
            if accepted is not None:
                self._publish(UPDATE, accepted)
            self.current_competition = competition
            return competition

    def leave_competition(self, competition_id: int) -> None:
        with self._operation("leave competition"):
            user_id = self._require_user("leave a competition")
            with self._session() as db:
                participant = self._require_participant(db, competition_id, user_id)
                transition_participant(participant, ParticipantStatus.DECLINED)
                db.add(participant)
                db.commit()
            self._publish(UPDATE, participant)
            self.current_competition = None
            self.participants = []

    def cancel_competition(self, competition_id: int) -> None:
        with self._operation("cancel competition"):
            user_id = self._require_user("cancel a competition")
            with self._session() as db:
                competition = self._get_competition(db, competition_id)
                self._require_creator(competition, user_id, "cancel")
                transition_competition(competition, CompetitionStatus.CANCELLED)
                db.add(competition)
                db.commit()
            self._publish(UPDATE, competition)
            self.current_competition = None
            self.participants = []

    def delete_competition(self, competition_id: int) -> None:
        """Delete a competition and everything hanging off it."""
        with self._operation("delete competition"):
            user_id = self._require_user("delete a competition")
            with self._session() as db:
                competition = self._get_competition(db, competition_id)
                self._require_creator(competition, user_id, "delete")
                for model in (CompetitionParticipant, ChatMessage, CompetitionInvite, CompetitionResult):
                    for row in db.exec(select(model).where(model.competition_id == competition_id)).all():
                        db.delete(row)
                for entry in db.exec(
                    select(RandomQueueEntry).where(RandomQueueEntry.competition_id == competition_id)
                ).all():
                    entry.competition_id = None
                    db.add(entry)
                db.delete(competition)
                db.commit()
            self._publish(DELETE, competition)
            self.user_competitions = [c for c in self.user_competitions if c.id != competition_id]
            self.user_active_competitions = [
                c for c in self.user_active_competitions if c.id != competition_id
            ]
            if self.current_competition is not None and self.current_competition.id == competition_id:
                self.clear_current_competition()

    def start_competition(self, competition_id: int, api_key: str) -> Competition:
        """
        Generate the question set and move the competition to active.

        The question service is called outside any transaction; if it fails
        the competition stays waiting.
        """
        with self._operation("start competition"):
            user_id = self._require_user("start a competition")
            if self.question_service is None:
                raise BackendError("Question service is not configured.")
            if not api_key:
                raise ValidationError("An API key is required to generate questions.")

            with self._session() as db:
                competition = self._get_competition(db, competition_id)
                self._require_creator(competition, user_id, "start")
                if competition.status != CompetitionStatus.WAITING:
                    raise ValidationError("Competition is not in waiting status.")
                joined = db.exec(
                    select(func.count(CompetitionParticipant.id)).where(
                        CompetitionParticipant.competition_id == competition_id,
                        CompetitionParticipant.status == ParticipantStatus.JOINED.value
                    )
                ).one()
                if joined < MIN_PARTICIPANTS_TO_START:
                    raise ValidationError(
                        f"At least {MIN_PARTICIPANTS_TO_START} participants are needed to start."
                    )
                preferences = dict(competition.quiz_preferences or {})

            generated = self.question_service.start_competition(competition_id, api_key, preferences)

            with self._session() as db:
                competition = self._get_competition(db, competition_id)
                # Cancelled while the questions were being generated
                if competition.status != CompetitionStatus.WAITING:
                    raise ValidationError("Competition is not in waiting status.")
                competition.questions = dump_questions(generated.questions)
                competition.start_time = generated.start_time
                transition_competition(competition, CompetitionStatus.ACTIVE)
                db.add(competition)
                db.commit()

            self._publish(UPDATE, competition)
            self.current_competition = competition
            return competition

    # Participants

    def load_participants(self, competition_id: int) -> List[CompetitionParticipant]:
        """Joined and completed participants, with their display names in ``profiles``."""
        with self._operation("load participants"):
            with self._session() as db:
                rows = db.exec(
                    select(CompetitionParticipant, User.full_name)
                    .join(User, User.id == CompetitionParticipant.user_id)
                    .where(
                        CompetitionParticipant.competition_id == competition_id,
                        col(CompetitionParticipant.status).in_(VISIBLE_PARTICIPANT_STATUSES)
                    )
                    .order_by(CompetitionParticipant.joined_at)
                ).all()
            self.participants = [participant for participant, _ in rows]
            self.profiles.update({participant.user_id: name for participant, name in rows})
            return self.participants

    def update_participant_progress(
        self,
        competition_id: int,
        answers: Dict[str, str],
        score: float,
        correct_answers: int,
        questions_answered: int,
        time_taken: int,
        current_question_index: int
    ) -> CompetitionParticipant:
        """Push the caller's progress. Never changes the participant's status."""
        with self._operation("update progress"):
            user_id = self._require_user("update progress")
            with self._session() as db:
                participant = self._require_participant(db, competition_id, user_id)
                if participant.status != ParticipantStatus.JOINED:
                    raise ValidationError("Progress can only be recorded while the competition is in progress.")
                participant.answers = {str(key): value for key, value in answers.items()}
                participant.score = score
                participant.correct_answers = correct_answers
                participant.questions_answered = questions_answered
                participant.time_taken = time_taken
                participant.current_question = current_question_index
                participant.last_activity = datetime.utcnow()
                db.add(participant)
                db.commit()
            self._publish(UPDATE, participant)
            return participant

    def complete_competition(self, competition_id: int) -> CompetitionParticipant:
        """
        Mark the caller completed.

        Ranking is left to ``finish_competition``, which must run exactly once
        whichever participant finishes last.
        """
        with self._operation("complete competition"):
            user_id = self._require_user("complete a competition")
            with self._session() as db:
                competition = self._get_competition(db, competition_id)
                if competition.status not in (CompetitionStatus.ACTIVE, CompetitionStatus.COMPLETED):
                    raise ValidationError("Only a competition in progress can be completed.")
                participant = self._require_participant(db, competition_id, user_id)
                transition_participant(participant, ParticipantStatus.COMPLETED)
                db.add(participant)
                db.commit()
            self._publish(UPDATE, participant)
            return participant

    def get_live_leaderboard(self, competition_id: Optional[int] = None) -> List[CompetitionParticipant]:
        """Current participants ordered by score desc, time taken asc. No I/O."""
        participants = self.participants
        if competition_id is not None:
            participants = [p for p in participants if p.competition_id == competition_id]
        return live_leaderboard(participants)

    # Realtime

    def _track(self, *subscriptions) -> Unsubscribe:
        def unsubscribe():
            for subscription in subscriptions:
                subscription.close()
            if unsubscribe in self._unsubscribers:
                self._unsubscribers.remove(unsubscribe)

        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    def subscribe_to_competition(
        self,
        competition_id: int,
        on_change: Optional[ChangeListener] = None
    ) -> Unsubscribe:
        """Reload participants / the competition on any change to them."""
        def participants_changed(event: ChangeEvent):
            logger.debug("Participant change in competition %s", competition_id)
            self.load_participants(competition_id)
            if on_change:
                on_change(event)

        def competition_changed(event: ChangeEvent):
            logger.debug("Competition %s changed (%s)", competition_id, event.type)
            if event.type == DELETE:
                self.clear_current_competition()
            else:
                self.load_competition(competition_id)
            if on_change:
                on_change(event)

        return self._track(
            self.feed.subscribe(
                "competition_participants", participants_changed,
                filter={"competition_id": competition_id}
            ),
            self.feed.subscribe(
                "competitions", competition_changed,
                filter={"id": competition_id}
            ),
        )

    def subscribe_to_chat(
        self,
        competition_id: int,
        on_change: Optional[ChangeListener] = None
    ) -> Unsubscribe:
        def message_posted(event: ChangeEvent):
            self.load_chat_messages(competition_id)
            if on_change:
                on_change(event)

        return self._track(
            self.feed.subscribe(
                "competition_chat", message_posted,
                filter={"competition_id": competition_id},
                events=(INSERT,)
            )
        )

    def subscribe_to_random_queue(self, on_change: Optional[ChangeListener] = None) -> Unsubscribe:
        """Follow the caller's ticket; the matcher updates it when a pairing is made."""
        user_id = self._require_user("join the queue")

        def ticket_updated(event: ChangeEvent):
            with self._session() as db:
                self.queue_entry = db.get(RandomQueueEntry, event.record["id"])
            if on_change:
                on_change(event)

        return self._track(
            self.feed.subscribe(
                "random_queue", ticket_updated,
                filter={"user_id": user_id},
                events=(UPDATE,)
            )
        )

    # Lists and history

    def load_user_competitions(self) -> List[Competition]:
        """Competitions the caller created, newest first."""
        with self._operation("load user competitions"):
            user_id = self._require_user("view your competitions")
            with self._session() as db:
                competitions = db.exec(
                    select(Competition)
                    .where(Competition.creator_id == user_id)
                    .order_by(col(Competition.created_at).desc(), col(Competition.id).desc())
                ).all()
            self.user_competitions = list(competitions)
            return self.user_competitions

    def load_user_active_competitions(self) -> List[Competition]:
        """Waiting or active competitions the caller has joined and not finished."""
        with self._operation("load user active competitions"):
            user_id = self._require_user("view your competitions")
            with self._session() as db:
                competitions = db.exec(
                    select(Competition)
                    .join(CompetitionParticipant, CompetitionParticipant.competition_id == Competition.id)
                    .where(
                        CompetitionParticipant.user_id == user_id,
                        CompetitionParticipant.status == ParticipantStatus.JOINED.value,
                        col(Competition.status).in_(OPEN_COMPETITION_STATUSES)
                    )
                    .order_by(col(Competition.created_at).desc(), col(Competition.id).desc())
                ).all()
            self.user_active_competitions = list(competitions)
            return self.user_active_competitions

    def load_participant_status(self, competition_id: int) -> Optional[str]:
        """The caller's own participant status, or None when not a participant."""
        with self._operation("load participant status"):
            user_id = self._require_user("view a competition")
            with self._session() as db:
                participant = self._get_participant(db, competition_id, user_id)
            return participant.status if participant else None

    def clear_current_competition(self) -> None:
        self.current_competition = None
        self.participants = []
        self.chat_messages = []
        self.competition_results = []
        self.queue_entry = None

    def load_competition_results(self, competition_id: int) -> List[CompetitionResult]:
        """Final results of a competition the caller took part in, best rank first."""
        with self._operation("load competition results"):
            user_id = self._require_user("view results")
            with self._session() as db:
                self._get_competition(db, competition_id)
                self._require_participant(db, competition_id, user_id)
                results = db.exec(
                    select(CompetitionResult)
                    .where(CompetitionResult.competition_id == competition_id)
                    .order_by(CompetitionResult.final_rank)
                ).all()
            self.competition_results = list(results)
            return self.competition_results

    def load_competition_results_history(self) -> List[CompetitionResult]:
        with self._operation("load competition results history"):
            user_id = self._require_user("view your history")
            with self._session() as db:
                results = db.exec(
                    select(CompetitionResult)
                    .where(CompetitionResult.user_id == user_id)
                    .order_by(col(CompetitionResult.competition_date).desc())
                ).all()
            self.competition_results_history = list(results)
            return self.competition_results_history

    def calculate_overall_stats(
        self,
        solo_history: Iterable[QuizHistory],
        competition_history: Optional[Iterable[CompetitionResult]] = None
    ) -> OverallStats:
        if competition_history is None:
            competition_history = self.competition_results_history
        self.overall_stats = calculate_overall_stats(solo_history, competition_history)
        return self.overall_stats

    # Chat

    def load_chat_messages(self, competition_id: int) -> List[ChatMessage]:
        with self._operation("load chat messages"):
            with self._session() as db:
                messages = db.exec(
                    select(ChatMessage)
                    .where(ChatMessage.competition_id == competition_id)
                    .order_by(ChatMessage.created_at, ChatMessage.id)
                ).all()
            self.chat_messages = list(messages)
            return self.chat_messages

    def send_chat_message(self, competition_id: int, message: str) -> ChatMessage:
        with self._operation("send message"):
            user_id = self._require_user("chat")
            text = (message or "").strip()
            if not text:
                raise ValidationError("Message cannot be empty.")
            if len(text) > MAX_CHAT_MESSAGE_LENGTH:
                raise ValidationError(f"Message must be {MAX_CHAT_MESSAGE_LENGTH} characters or less.")

            with self._session() as db:
                self._get_competition(db, competition_id)
                self._require_participant(db, competition_id, user_id)
                chat_message = ChatMessage(competition_id=competition_id, user_id=user_id, message=text)
                db.add(chat_message)
                db.commit()
            self._publish(INSERT, chat_message)
            return chat_message

    # Invites

    def _add_invites(
        self,
        db: Session,
        competition: Competition,
        user_id: int,
        emails: Iterable[str]
    ) -> List[CompetitionInvite]:
        wanted = []
        for email in emails:
            email = (email or "").strip().lower()
            if not email:
                continue
            if not EMAIL_PATTERN.match(email):
                raise ValidationError(f"Invalid email address: {email}")
            if email not in wanted:
                wanted.append(email)
        if not wanted:
            return []

        existing = set(db.exec(
            select(CompetitionInvite.email).where(
                CompetitionInvite.competition_id == competition.id,
                col(CompetitionInvite.email).in_(wanted)
            )
        ).all())
        invites = [
            CompetitionInvite(competition_id=competition.id, email=email, invited_by=user_id)
            for email in wanted
            if email not in existing
        ]
        db.add_all(invites)
        return invites

    def _accept_pending_invite(self, db: Session, competition_id: int) -> Optional[CompetitionInvite]:
        if not self.user_email:
            return None
        invite = db.exec(
            select(CompetitionInvite).where(
                CompetitionInvite.competition_id == competition_id,
                CompetitionInvite.email == self.user_email,
                CompetitionInvite.status == InviteStatus.PENDING.value
            )
        ).first()
        if invite is not None:
            invite.status = InviteStatus.ACCEPTED.value
            db.add(invite)
        return invite

    def invite_participants(self, competition_id: int, emails: Iterable[str]) -> List[CompetitionInvite]:
        with self._operation("invite participants"):
            user_id = self._require_user("invite participants")
            with self._session() as db:
                competition = self._get_competition(db, competition_id)
                self._require_creator(competition, user_id, "invite to")
                if competition.status != CompetitionStatus.WAITING:
                    raise ValidationError("Invites can only be sent before the competition starts.")
                invites = self._add_invites(db, competition, user_id, emails)
                db.commit()
            self._publish(INSERT, *invites)
            return invites

    def load_pending_invites(self) -> List[CompetitionInvite]:
        """Pending invites addressed to the caller for competitions still waiting."""
        with self._operation("load invites"):
            self._require_user("view invites")
            if not self.user_email:
                self.pending_invites = []
                return self.pending_invites
            with self._session() as db:
                invites = db.exec(
                    select(CompetitionInvite)
                    .join(Competition, Competition.id == CompetitionInvite.competition_id)
                    .where(
                        CompetitionInvite.email == self.user_email,
                        CompetitionInvite.status == InviteStatus.PENDING.value,
                        Competition.status == CompetitionStatus.WAITING.value
                    )
                    .order_by(col(CompetitionInvite.created_at).desc())
                ).all()
            self.pending_invites = list(invites)
            return self.pending_invites

    def _pending_invite(self, db: Session, competition_id: int) -> CompetitionInvite:
        invite = db.exec(
            select(CompetitionInvite).where(
                CompetitionInvite.competition_id == competition_id,
                CompetitionInvite.email == (self.user_email or ""),
                CompetitionInvite.status == InviteStatus.PENDING.value
            )
        ).first()
        if invite is None:
            raise NotFoundError("Invite not found.")
        return invite

    def accept_invite(self, competition_id: int) -> Competition:
        with self._operation("accept invite"):
            self._require_user("accept an invite")
            with self._session() as db:
                self._pending_invite(db, competition_id)
                code = self._get_competition(db, competition_id).competition_code
        # Joining marks the invite accepted in the same transaction
        return self.join_competition(code)

    def decline_invite(self, competition_id: int) -> CompetitionInvite:
        with self._operation("decline invite"):
            self._require_user("decline an invite")
            with self._session() as db:
                invite = self._pending_invite(db, competition_id)
                invite.status = InviteStatus.DECLINED.value
                db.add(invite)
                db.commit()
            self._publish(UPDATE, invite)
            self.pending_invites = [i for i in self.pending_invites if i.competition_id != competition_id]
            return invite

    # Random matchmaking

    def join_random_queue(self, topic: str, difficulty: str = "medium", language: str = "English") -> RandomQueueEntry:
        """Queue the caller for a random match, reusing a ticket that is still live."""
        with self._operation("join queue"):
            user_id = self._require_user("join the queue")
            if not topic or not topic.strip():
                raise ValidationError("A topic is required for random matchmaking.")
            if difficulty not in ("easy", "medium", "hard"):
                raise ValidationError(f"Unknown difficulty '{difficulty}'.")

            with self._session() as db:
                existing = db.exec(
                    select(RandomQueueEntry).where(
                        RandomQueueEntry.user_id == user_id,
                        col(RandomQueueEntry.status).in_(ACTIVE_QUEUE_STATUSES)
                    )
                ).first()
                if existing is not None:
                    self.queue_entry = existing
                    return existing

                entry = RandomQueueEntry(
                    user_id=user_id,
                    topic=topic.strip(),
                    difficulty=difficulty,
                    language=language,
                    status=QueueStatus.WAITING.value
                )
                db.add(entry)
                db.commit()
            self._publish(INSERT, entry)
            self.queue_entry = entry
            return entry

    def leave_random_queue(self) -> int:
        """Cancel the caller's live tickets. Returns how many were cancelled."""
        with self._operation("leave queue"):
            user_id = self._require_user("leave the queue")
            with self._session() as db:
                entries = db.exec(
                    select(RandomQueueEntry).where(
                        RandomQueueEntry.user_id == user_id,
                        col(RandomQueueEntry.status).in_(ACTIVE_QUEUE_STATUSES)
                    )
                ).all()
                for entry in entries:
                    transition_ticket(entry, QueueStatus.CANCELLED)
                    db.add(entry)
                db.commit()
            self._publish(UPDATE, *entries)
            self.queue_entry = None
            return len(entries)
