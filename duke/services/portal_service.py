"""
Portal service: sessions, organisations and accounts.

Everything that creates, changes or deletes users and organisations goes
through here. Capability checks use duke.auth.permissions; registration
enforces the per-organisation rules (credits for pupils, one admin per
organisation) under the organisation's write lock, and rolls back the
login and user records if any step fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from ..auth import permissions
from ..core.config import APP_NAME, Settings
from ..models.catalogue import Catalogue
from ..models.org import Organisation
from ..models.section import Section
from ..models.user import (
    AdminRole,
    OrgAdminRole,
    OwnerRole,
    PupilRole,
    TeacherRole,
    User,
    is_pupil,
)
from ..stores.database import Database
from ..stores.link_store import CreateUserIntent, ResetPasswordIntent
from ..utils.exceptions import (
    ConflictError,
    DeserializeError,
    InvalidInputError,
    NotFoundError,
    StoreError,
    UnauthenticatedError,
    UnauthorisedError,
    WrongPasswordError,
)
from ..utils.logger import get_logger
from ..utils.validation import (
    gen_password,
    parse_uuid,
    require_email,
    require_optional_string,
    require_password,
    require_string,
)
from .asset_service import AssetService
from .mail_service import Mailer, render

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user: User
    token: UUID


@dataclass
class AccountListing:
    users: List[User] = field(default_factory=list)
    invalid: List[UUID] = field(default_factory=list)


@dataclass
class Profile:
    user: User
    default_password: Optional[str] = None


@dataclass
class OrgMembers:
    admin: Optional[User]
    teachers: List[User]
    pupils: List[User]


@dataclass
class PurgeResult:
    pupils_deleted: int = 0
    orgs_deleted: int = 0
    credits_reset: int = 0


class PortalService:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        mailer: Mailer,
        catalogue: Catalogue,
        assets: AssetService,
    ):
        self.db = db
        self.settings = settings
        self.mailer = mailer
        self.catalogue = catalogue
        self.assets = assets
        self.session_ttl = timedelta(seconds=settings.auth.session_ttl_seconds)
        self.link_ttl = timedelta(seconds=settings.auth.link_ttl_seconds)

    def link_url(self, path: str, token: UUID) -> str:
        return f"https://{self.settings.server.host}/user/{path}/{token}"

    # -- sessions ------------------------------------------------------

    def ensure_owner(self) -> Optional[User]:
        """Create the Owner account on first start if none exists."""
        for user in self.db.users.values():
            if user.role.kind == "owner":
                return None
        auth = self.settings.auth
        if not auth.owner_email or not auth.owner_password:
            logger.warning("No owner account exists and none is configured")
            return None
        owner = User(
            email=require_email(auth.owner_email),
            forename="Portal",
            surname="Owner",
            role=OwnerRole(),
        )
        self.register_user(owner, require_password(auth.owner_password), default_password=False)
        logger.info("Owner account created", email=owner.email)
        return owner

    def login(self, email: str, password: str) -> AuthContext:
        user_id = self.db.credentials.authenticate(email, password)
        user = self.db.users.fetch(user_id)
        if user is None:
            logger.warning("Credentials point at a missing user", user_id=str(user_id))
            raise UnauthenticatedError("Account no longer exists")
        token = self.db.sessions.create(user_id, self.session_ttl)
        logger.info("User logged in", user_id=str(user_id))
        return AuthContext(user=user, token=token)

    def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        try:
            self.db.sessions.destroy(UUID(token))
        except ValueError:
            return

    def authenticate(self, token: Optional[str], push_expiry: bool = True) -> AuthContext:
        """Resolve a session token to the acting user."""
        if not token:
            raise UnauthenticatedError("Not authenticated")
        try:
            session_id = UUID(token)
        except ValueError:
            raise UnauthenticatedError("Invalid session")
        user_id = self.db.sessions.check(session_id, push_expiry)
        if user_id is None:
            raise UnauthenticatedError("Invalid or expired session")
        try:
            user = self.db.users.fetch(user_id)
        except DeserializeError:
            user = None
        if user is None:
            # Stale session pointing to missing user
            self.db.sessions.destroy(session_id)
            raise UnauthenticatedError("Invalid or expired session")
        return AuthContext(user=user, token=session_id)

    # -- organisations ---------------------------------------------------

    def _require_org(self, org_id: UUID) -> Organisation:
        org = self.db.orgs.fetch(org_id)
        if org is None:
            raise NotFoundError("Organisation not found")
        return org

    def create_org(self, actor: User, name: str) -> Organisation:
        if not permissions.can_view_orgs(actor):
            raise UnauthorisedError("You cannot create organisations")
        org = Organisation(name=require_string(name, "name"))
        self.db.orgs.insert(org.id, org)
        logger.info("Organisation created", org_id=str(org.id), name=org.name)
        return org

    def add_credits(self, actor: User, org_id: UUID, amount: int) -> Organisation:
        if not permissions.can_view_orgs(actor):
            raise UnauthorisedError("You cannot add credits")
        if amount <= 0:
            raise InvalidInputError("Credits must be a positive number", field="credits")
        guard = self.db.orgs.write_lock(org_id)
        if guard is None:
            raise NotFoundError("Organisation not found")
        with guard:
            guard.mutable().credits += amount
            org = guard.value
        logger.info("Credits added", org_id=str(org_id), amount=amount, credits=org.credits)
        return org

    def list_orgs(self, actor: User) -> List[Organisation]:
        if permissions.can_view_orgs(actor):
            return sorted(self.db.orgs.values(), key=lambda o: o.name.lower())
        if actor.org_id is None:
            return []
        org = self.db.orgs.fetch(actor.org_id)
        return [org] if org is not None else []

    def get_org(self, actor: User, org_id: UUID) -> Organisation:
        org = self._require_org(org_id)
        if not permissions.can_view_org(actor, org):
            raise UnauthorisedError("You cannot view this organisation")
        return org

    def org_members(self, actor: User, org_id: UUID) -> OrgMembers:
        org = self.get_org(actor, org_id)

        def visible(ids: List[UUID]) -> List[User]:
            out = []
            for user_id in ids:
                try:
                    user = self.db.users.fetch(user_id)
                except DeserializeError:
                    continue
                if user is not None and permissions.can_view_user(actor, user):
                    out.append(user)
            return sorted(out, key=lambda u: (u.surname.lower(), u.forename.lower()))

        admins = visible([org.admin] if org.admin else [])
        return OrgMembers(
            admin=admins[0] if admins else None,
            teachers=visible(org.teachers),
            pupils=visible(org.pupils),
        )

    def delete_org(self, actor: User, org_id: UUID) -> None:
        if not permissions.can_delete_orgs(actor):
            raise UnauthorisedError("You cannot delete organisations")
        if self.db.orgs.remove(org_id) is None:
            raise NotFoundError("Organisation not found")
        logger.info("Organisation deleted", org_id=str(org_id))

        members = [user for user in self.db.users.values() if user.org_id == org_id]
        for user in members:
            self._purge_user(user, update_org=False)

    # -- registration ----------------------------------------------------

    def register_user(self, user: User, password: str, default_password: bool) -> User:
        """
        Persist a new user and its login.

        Org-scoped users are registered under the organisation's write lock:
        pupils consume a credit, an org admin fills the single admin seat.
        On any failure nothing is left behind.
        """
        require_email(user.email)
        require_string(user.forename, "forename")
        require_string(user.surname, "surname")

        org_id = user.org_id
        created: List[str] = []
        try:
            if org_id is None:
                self._insert_user(user, password, default_password, created)
            else:
                guard = self.db.orgs.write_lock(org_id)
                if guard is None:
                    raise NotFoundError("Organisation not found")
                with guard:
                    org = guard.value
                    if is_pupil(user.role) and org.credits <= 0:
                        raise ConflictError("Organisation has no credits remaining")
                    if user.role.kind == "org_admin" and org.admin is not None:
                        raise ConflictError("Organisation already has an administrator")
                    self._insert_user(user, password, default_password, created)
                    org = guard.mutable()
                    if is_pupil(user.role):
                        org.pupils.append(user.id)
                        org.credits -= 1
                    elif user.role.kind == "teacher":
                        org.teachers.append(user.id)
                    elif user.role.kind == "org_admin":
                        org.admin = user.id
        except Exception:
            self._rollback_registration(user, created)
            raise

        logger.info(
            "User registered",
            user_id=str(user.id),
            role=user.role.kind,
            org_id=str(org_id) if org_id else None,
        )
        return user

    def _insert_user(self, user: User, password: str, default_password: bool, created: List[str]) -> None:
        self.db.credentials.add(user.email, password, user.id, default_password)
        created.append("credentials")
        self.db.users.insert(user.id, user)
        created.append("user")

    def _rollback_registration(self, user: User, created: List[str]) -> None:
        try:
            if "user" in created:
                self.db.users.remove_silent(user.id)
            if "credentials" in created:
                self.db.credentials.remove(user.email)
        except StoreError as e:
            logger.error("Failed to roll back registration", user_id=str(user.id), error=str(e))

    def _send_account_created(self, user: User, password: str, org_name: str = "") -> bool:
        try:
            token = self.db.links.create(ResetPasswordIntent(user_id=user.id), self.link_ttl)
        except StoreError as e:
            logger.error("Failed to create password link", user_id=str(user.id), error=str(e))
            return False
        subject = f"{APP_NAME} - Welcome & Password Info"
        subtitle = render(
            "email/account_created.html",
            name=user.name,
            account_type=user.role_title.lower(),
            org_name=org_name,
            username=user.email,
            password=password,
            link=self.link_url("change_password", token),
        )
        return self.mailer.send(user.email, subject, subject, subtitle, "")

    def _new_user(self, email: str, forename: str, surname: str, role) -> User:
        return User(
            email=require_email(email),
            forename=require_string(forename, "forename"),
            surname=require_string(surname, "surname"),
            role=role,
        )

    def add_pupil(
        self,
        actor: User,
        org_id: UUID,
        email: str,
        forename: str,
        surname: str,
        class_label: str = "",
        award_index: int = 0,
    ) -> Tuple[User, str]:
        """Create a pupil with a generated password. Returns the user and the password."""
        org = self._require_org(org_id)
        if not permissions.can_add_pupil(actor, org):
            raise UnauthorisedError("You cannot add pupils to this organisation")
        if org.credits <= 0:
            raise ConflictError("Organisation has no credits remaining")
        if not self.catalogue.has_award(award_index):
            raise InvalidInputError("Invalid award", field="award")
        role = PupilRole(
            org_id=org_id,
            class_label=require_optional_string(class_label, "class"),
            award_index=award_index,
        )
        user = self._new_user(email, forename, surname, role)
        password = gen_password()
        self.register_user(user, password, default_password=True)
        if not self._send_account_created(user, password, org.name):
            logger.error("Failed to send email", user_id=str(user.id))
        return user, password

    def add_teacher(self, actor: User, org_id: UUID, email: str, forename: str, surname: str) -> Tuple[User, str]:
        org = self._require_org(org_id)
        if not permissions.can_add_associate(actor, org):
            raise UnauthorisedError("You cannot add teachers to this organisation")
        user = self._new_user(email, forename, surname, TeacherRole(org_id=org_id))
        password = gen_password()
        self.register_user(user, password, default_password=True)
        if not self._send_account_created(user, password, org.name):
            logger.error("Failed to send email", user_id=str(user.id))
        return user, password

    def add_admin(self, actor: User, email: str, forename: str, surname: str) -> Tuple[User, str]:
        if not permissions.can_add_admin(actor):
            raise UnauthorisedError("Only the owner can add administrators")
        user = self._new_user(email, forename, surname, AdminRole())
        password = gen_password()
        self.register_user(user, password, default_password=True)
        if not self._send_account_created(user, password):
            logger.error("Failed to send email", user_id=str(user.id))
        return user, password

    def invite_org_admin(self, actor: User, org_id: UUID, email: str) -> UUID:
        """Email a create-account link for the organisation's admin seat."""
        if not permissions.can_view_orgs(actor):
            raise UnauthorisedError("You cannot assign organisation admins")
        require_email(email)
        org = self._require_org(org_id)
        if org.admin is not None:
            raise ConflictError("Organisation already has an administrator")

        token = self.db.links.create(CreateUserIntent(role=OrgAdminRole(org_id=org_id)), self.link_ttl)
        subtitle = render(
            "email/create_account.html",
            link=self.link_url("create_account", token),
            account_type="organisation",
            org_name=org.name,
        )
        if not self.mailer.send(
            email,
            f"{APP_NAME} - Create Your Account",
            "Create Organisation Account",
            subtitle,
            "",
        ):
            logger.error("Failed to send email", recipient=email)
        return token

    # -- links -----------------------------------------------------------

    def describe_link(self, token: str):
        intent = self.db.links.fetch_and_validate(parse_uuid(token, "token"))
        if intent is None:
            raise NotFoundError("Link has expired or was already used")
        return intent

    def redeem_create_account(self, token: str, email: str, forename: str, surname: str, password: str) -> User:
        link_id = parse_uuid(token, "token")
        user_email = require_email(email)
        require_password(password)

        def create(intent) -> User:
            if not isinstance(intent, CreateUserIntent):
                raise InvalidInputError("This link cannot create an account", field="token")
            user = self._new_user(user_email, forename, surname, intent.role)
            return self.register_user(user, password, default_password=False)

        return self.db.links.redeem(link_id, create)

    def redeem_change_password(self, token: str, password: str) -> User:
        link_id = parse_uuid(token, "token")
        require_password(password)

        def change(intent) -> User:
            if not isinstance(intent, ResetPasswordIntent):
                raise InvalidInputError("This link cannot change a password", field="token")
            user = self.db.users.fetch(intent.user_id)
            if user is None:
                raise NotFoundError("User not found")
            self.db.credentials.change_password(user.email, password, default_password=False)
            return user

        user = self.db.links.redeem(link_id, change)
        logger.info("Password changed", user_id=str(user.id))
        return user

    def send_password_reset(self, actor: User, user_id: UUID) -> UUID:
        """Email a fresh change-password link to a user the actor can manage."""
        target = self.db.users.fetch(user_id)
        if target is None:
            raise NotFoundError("User not found")
        if actor.id != target.id and not permissions.can_delete_user(actor, target):
            raise UnauthorisedError("You cannot reset this password")
        token = self.db.links.create(ResetPasswordIntent(user_id=target.id), self.link_ttl)
        subtitle = render(
            "email/change_password.html",
            link=self.link_url("change_password", token),
            username=target.email,
        )
        subject = f"{APP_NAME} - Change Password"
        if not self.mailer.send(target.email, subject, "Change Password", subtitle, ""):
            logger.error("Failed to send email", user_id=str(target.id))
        return token

    # -- deletion --------------------------------------------------------

    def delete_user(self, actor: User, user_id: UUID) -> None:
        try:
            target = self.db.users.fetch(user_id)
        except DeserializeError:
            if not permissions.can_delete_invalid_users(actor):
                raise UnauthorisedError("You cannot delete this user")
            self._purge_invalid_user(user_id)
            return
        if target is None:
            raise NotFoundError("User not found")
        if not permissions.can_delete_user(actor, target):
            raise UnauthorisedError("You cannot delete this user")
        self._purge_user(target, update_org=True)

    def _purge_user(self, user: User, update_org: bool) -> None:
        try:
            # The stored record may have gained sections since user was read
            current = self.db.users.remove(user.id)
        except DeserializeError:
            current = user
        if current is None:
            raise NotFoundError("User not found")
        user = current
        logger.info("User deleted", user_id=str(user.id), role=user.role.kind)

        try:
            self.db.credentials.remove(user.email)
            self.db.sessions.destroy_for_user(user.id)
        except StoreError as e:
            logger.warning("Failed to remove login for deleted user", user_id=str(user.id), error=str(e))

        section_ids: List[UUID] = []
        if isinstance(user.role, PupilRole):
            section_ids = [s for s in user.role.sections if s is not None]
            for section_id in section_ids:
                self._remove_section_records(section_id)

        if update_org and user.org_id is not None:
            self._detach_from_org(user.org_id, user.id, section_ids)

    def _remove_section_records(self, section_id: UUID) -> None:
        try:
            self.db.sections.remove_silent(section_id)
            self.db.outstanding.remove_silent(section_id)
        except StoreError as e:
            logger.warning("Failed to remove section", section_id=str(section_id), error=str(e))
        self.assets.remove_dir(section_id)

    def _detach_from_org(self, org_id: UUID, user_id: UUID, section_ids: List[UUID]) -> None:
        try:
            guard = self.db.orgs.write_lock(org_id)
            if guard is None:
                return
            with guard:
                org = guard.mutable()
                if user_id in org.pupils:
                    org.credits += 1
                org.remove_member(user_id)
                for section_id in section_ids:
                    org.remove_unreviewed(section_id)
        except StoreError as e:
            logger.warning("Failed to update org for deleted user", org_id=str(org_id), error=str(e))

    def _purge_invalid_user(self, user_id: UUID) -> None:
        """Delete a user whose record cannot be read, by scanning every store."""
        self.db.users.remove_silent(user_id)
        logger.warning("Deleting unreadable user", user_id=str(user_id))

        for email in self.db.credentials.find_by_user(user_id):
            self.db.credentials.remove(email)
        self.db.sessions.destroy_for_user(user_id)

        owned = [section_id for section_id, s in self.db.sections.items() if s.user_id == user_id]
        for section_id in owned:
            self._remove_section_records(section_id)

        def detach(guard) -> None:
            org = guard.value
            if (
                org.admin != user_id
                and user_id not in org.teachers
                and user_id not in org.pupils
                and not any(s in org.unreviewed_sections for s in owned)
            ):
                return
            org = guard.mutable()
            if user_id in org.pupils:
                org.credits += 1
            org.remove_member(user_id)
            for section_id in owned:
                org.remove_unreviewed(section_id)

        self.db.orgs.for_each_write(detach)

    # -- accounts --------------------------------------------------------

    def list_accounts(self, actor: User, query: Optional[str] = None) -> AccountListing:
        """All readable users, most privileged first; unreadable ids listed separately."""
        if not permissions.can_view_accounts(actor):
            raise UnauthorisedError("You cannot view accounts")
        needle = (query or "").strip().lower()
        listing = AccountListing()

        def collect(user_id: UUID, user: Optional[User]) -> None:
            if user is None:
                listing.invalid.append(user_id)
                return
            if needle and needle not in user.name.lower() and needle not in user.email.lower():
                return
            listing.users.append(user)

        self.db.users.for_each_key(collect)
        listing.users.sort(
            key=lambda u: (-permissions.magnitude(u.role), u.surname.lower(), u.forename.lower())
        )
        return listing

    def get_profile(self, actor: User, user_id: UUID) -> Profile:
        target = self.db.users.fetch(user_id)
        if target is None:
            raise NotFoundError("User not found")
        if actor.id != target.id and not permissions.can_view_user(actor, target):
            raise UnauthorisedError("You cannot view this user")
        profile = Profile(user=target)
        if permissions.can_delete_user(actor, target):
            profile.default_password = self.db.credentials.default_password(target.email)
        return profile

    def set_notifications(self, actor: User, user_id: UUID, enabled: bool) -> User:
        if actor.id != user_id and actor.role.kind != "owner":
            raise UnauthorisedError("You cannot change this user's notifications")
        guard = self.db.users.write_lock(user_id)
        if guard is None:
            raise NotFoundError("User not found")
        with guard:
            if guard.value.notifications != enabled:
                guard.mutable().notifications = enabled
            user = guard.value
        return user

    # -- dashboards ------------------------------------------------------

    def list_unreviewed(self, actor: User, org_id: UUID) -> List[Section]:
        org = self.get_org(actor, org_id)
        if is_pupil(actor.role):
            raise UnauthorisedError("You cannot review sections")
        sections = []
        for section_id in org.unreviewed_sections:
            try:
                section = self.db.sections.fetch(section_id)
            except DeserializeError:
                continue
            if section is not None and section.is_in_review:
                sections.append(section)
        return sorted(sections, key=lambda s: s.state.submitted_at)

    def list_outstanding(self, actor: User) -> List[Section]:
        if not permissions.can_view_outstanding(actor):
            raise UnauthorisedError("You cannot view outstanding achievements")
        sections = []
        for section_id in self.db.outstanding.keys():
            try:
                section = self.db.sections.fetch(section_id)
            except DeserializeError:
                continue
            if section is not None:
                sections.append(section)
        return sections

    # -- administration --------------------------------------------------

    def purge_data(
        self,
        actor: User,
        password: str,
        delete_pupils: bool = False,
        delete_orgs: bool = False,
        reset_credits: bool = False,
    ) -> PurgeResult:
        """Bulk deletion, confirmed with the actor's own password."""
        if not permissions.is_global(actor.role):
            raise UnauthorisedError("You cannot purge data")
        try:
            confirmed = self.db.credentials.authenticate(actor.email, password) == actor.id
        except WrongPasswordError:
            confirmed = False
        if not confirmed:
            raise UnauthorisedError("Password confirmation failed")

        result = PurgeResult()
        if delete_pupils:
            for user in list(self.db.users.values()):
                if is_pupil(user.role):
                    self._purge_user(user, update_org=True)
                    result.pupils_deleted += 1
        if delete_orgs:
            for org_id in list(self.db.orgs.keys()):
                self.delete_org(actor, org_id)
                result.orgs_deleted += 1
        if reset_credits:
            def reset(guard) -> None:
                if guard.value.credits:
                    guard.mutable().credits = 0
                    result.credits_reset += 1

            self.db.orgs.for_each_write(reset)

        logger.warning(
            "Data purged",
            actor_id=str(actor.id),
            pupils_deleted=result.pupils_deleted,
            orgs_deleted=result.orgs_deleted,
            credits_reset=result.credits_reset,
        )
        return result

    def org_summary(self, org: Organisation) -> Dict[str, object]:
        return {
            "id": str(org.id),
            "name": org.name,
            "credits": org.credits,
            "has_admin": org.admin is not None,
            "teachers": len(org.teachers),
            "pupils": len(org.pupils),
            "unreviewed": len(org.unreviewed_sections),
        }
