from __future__ import annotations

import asyncio
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from passage.config import Settings
from passage.logging import get_logger
from passage.service.email import CodeMailer
from passage.service.errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    NotFoundError,
    ServiceError,
    TransientProviderError,
    UnauthorizedError,
    ValidationError,
    VerificationError,
)
from passage.service.identity import (
    ERROR_INVALID_TOKEN,
    ERROR_NOT_CONFIGURED,
    ERROR_UNAVAILABLE,
    ExternalIdentityVerifier,
    IdentityProfile,
)
from passage.service.passwords import PasswordHasher
from passage.service.rate_limit import (
    SCOPE_LOGIN,
    SCOPE_OTP,
    SCOPE_TWO_FACTOR,
    AttemptLimiter,
)
from passage.service.store import AuthStore
from passage.service.tokens import SessionTokens, TokenIssuer
from passage.service.two_factor import TwoFactorAuthenticator, TwoFactorSetup
from passage.service.verification import (
    CONTEXT_PASSWORD_RESET,
    CONTEXT_PHONE_OTP,
    CONTEXT_REGISTER,
    CONTEXT_RESEND,
    IssuedCode,
    VerificationCodeService,
    normalize_email,
    normalize_phone,
)
from passage.storage.errors import ConstraintViolation
from passage.storage.models import (
    KIND_EMAIL,
    KIND_PHONE,
    PROVIDER_ANONYMOUS,
    PROVIDER_PASSWORD,
    PROVIDER_PHONE,
    PROVIDERS,
    VERIFIED_PROVIDERS,
    Account,
    Associate,
)

logger = get_logger(__name__)

CODE_SENT_MESSAGE = "Verification code sent successfully"
GENERIC_CODE_MESSAGE = "If the destination exists, a verification code has been sent"
GENERIC_LOGIN_MESSAGE = "Invalid credentials"


@dataclass
class LoginResult:
    """Either a 2FA challenge or a full session, never both."""

    requires_two_factor: bool = False
    pending_token: Optional[str] = None
    expires_in: Optional[int] = None
    tokens: Optional[SessionTokens] = None
    account: Optional[Account] = None

    def as_dict(self) -> dict[str, Any]:
        if self.requires_two_factor:
            return {
                "requires_2fa": True,
                "temp_token": self.pending_token,
                "expires_in": self.expires_in,
            }
        body: dict[str, Any] = {"requires_2fa": False}
        if self.tokens:
            body.update(self.tokens.as_dict())
        if self.account:
            body["account"] = {
                "id": self.account.id,
                "role": self.account.role,
                "nickname": self.account.nickname,
            }
        return body


@dataclass
class VerificationPreview:
    message: str
    expires_at: Optional[datetime] = None
    preview_code: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.expires_at:
            body["expires_at"] = self.expires_at.isoformat()
        if self.preview_code:
            body["preview_code"] = self.preview_code
        return body


@dataclass
class RegistrationResult:
    account: Account
    associate: Associate
    verifications: Dict[str, VerificationPreview] = field(default_factory=dict)


@dataclass
class ContactVerified:
    kind: str
    target: str
    account_ids: List[str] = field(default_factory=list)


def split_identifier(identifier: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(email, phone)`` with exactly one set for a non-empty identifier."""
    raw = (identifier or "").strip()
    if not raw:
        return None, None
    if "@" in raw:
        return normalize_email(raw), None
    return None, normalize_phone(raw)


class SessionManager:
    """Orchestrates login flows on top of the credential services.

    Store access is synchronous; unexpected store failures surface as
    ``InternalError`` while service errors pass through untouched.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        passwords: PasswordHasher,
        two_factor: TwoFactorAuthenticator,
        verification: VerificationCodeService,
        settings: Settings,
        *,
        identity: Optional[ExternalIdentityVerifier] = None,
        limiter: Optional[AttemptLimiter] = None,
        mailer: Optional[CodeMailer] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.two_factor = two_factor
        self.verification = verification
        self.settings = settings
        self.identity = identity
        self.limiter = limiter
        self.mailer = mailer
        self.logger = logger

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "session_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("Authentication backend failure") from exc

    async def _limit_check(self, scope: str, *parts: str) -> None:
        if not self.limiter:
            return
        try:
            await self.limiter.check(scope, *parts)
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.warning("attempt_limiter_unavailable", scope=scope, error=str(exc))

    async def _limit_fail(self, scope: str, *parts: str) -> None:
        if not self.limiter:
            return
        try:
            await self.limiter.record_failure(scope, *parts)
        except Exception as exc:
            self.logger.warning("attempt_limiter_unavailable", scope=scope, error=str(exc))

    async def _limit_reset(self, scope: str, *parts: str) -> None:
        if not self.limiter:
            return
        try:
            await self.limiter.reset(scope, *parts)
        except Exception as exc:
            self.logger.warning("attempt_limiter_unavailable", scope=scope, error=str(exc))

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found", detail={"account_id": account_id})
        return account

    def _login_failure(self, message: str) -> UnauthorizedError:
        if self.settings.generic_login_errors:
            message = GENERIC_LOGIN_MESSAGE
        return UnauthorizedError(message, reason="invalid_credentials")

    def _complete_login(
        self, account: Account, client_ip: Optional[str], *, enforce_two_factor: bool = True
    ) -> LoginResult:
        if enforce_two_factor and self.two_factor.is_enabled(account.id):
            pending = self.tokens.issue_pending_two_factor_token(account.id)
            self.logger.info("login_two_factor_required", account_id=account.id)
            return LoginResult(
                requires_two_factor=True,
                pending_token=pending.token,
                expires_in=pending.expires_in,
            )
        session = self.tokens.create_session(account, client_ip)
        self.logger.info("login_succeeded", account_id=account.id)
        return LoginResult(tokens=session, account=account)

    def _preview(self, issued: IssuedCode) -> VerificationPreview:
        return VerificationPreview(
            message=CODE_SENT_MESSAGE,
            expires_at=issued.expires_at,
            preview_code=issued.code if self.settings.reveal_codes else None,
        )

    async def _deliver(self, kind: str, target: str, issued: IssuedCode, *, reset: bool = False) -> None:
        if kind != KIND_EMAIL or not self.mailer:
            # No SMS transport ships with the library; callers deliver phone codes
            self.logger.info("verification_code_ready", kind=kind, record_id=issued.record.id)
            return
        send = self.mailer.send_password_reset_code if reset else self.mailer.send_verification_code
        delivered = await asyncio.to_thread(send, target, issued.code, issued.expires_at)
        if not delivered:
            self.logger.warning(
                "verification_code_delivery_failed", kind=kind, record_id=issued.record.id
            )

    # ------------------------------------------------------------------
    # password login
    # ------------------------------------------------------------------
    async def login(
        self, identifier: str, password: str, client_ip: Optional[str] = None
    ) -> LoginResult:
        email, phone = split_identifier(identifier)
        subject = email or phone
        if not subject or not password:
            raise ValidationError("Identifier and password are required")
        await self._limit_check(SCOPE_LOGIN, subject)

        with self._guard("login"):
            associate = self.store.find_password_associate(email=email, phone=phone)
        if not associate:
            await self._limit_fail(SCOPE_LOGIN, subject)
            self.logger.warning("login_failed", reason="account_not_found")
            raise self._login_failure("User not found")
        if not self.passwords.verify(password, associate.password_hash):
            await self._limit_fail(SCOPE_LOGIN, subject)
            self.logger.warning(
                "login_failed", reason="invalid_password", account_id=associate.account_id
            )
            raise self._login_failure("Invalid password")

        unverified = associate.unverified_contact()
        if unverified == KIND_EMAIL:
            raise UnauthorizedError(
                "Email verification is required before logging in",
                reason="verification_required",
            )
        if unverified == KIND_PHONE:
            raise UnauthorizedError(
                "Phone verification is required before logging in",
                reason="verification_required",
            )

        await self._limit_reset(SCOPE_LOGIN, subject)
        with self._guard("login"):
            if self.passwords.needs_rehash(associate.password_hash):
                self.store.update_associate(
                    associate.id, password_hash=self.passwords.rehash(password)
                )
            account = self._require_account(associate.account_id)
            return self._complete_login(account, client_ip)

    async def verify_login_two_factor(
        self, pending_token: str, code: str, client_ip: Optional[str] = None
    ) -> LoginResult:
        account_id = self.tokens.verify_pending_two_factor_token(pending_token)
        await self._limit_check(SCOPE_TWO_FACTOR, account_id)
        try:
            with self._guard("verify_login_two_factor"):
                self.two_factor.verify_login_code(account_id, code)
        except UnauthorizedError:
            await self._limit_fail(SCOPE_TWO_FACTOR, account_id)
            raise
        await self._limit_reset(SCOPE_TWO_FACTOR, account_id)
        with self._guard("verify_login_two_factor"):
            account = self.store.get_account(account_id)
            if not account:
                raise UnauthorizedError("User not found", reason="invalid_credentials")
            return self._complete_login(account, client_ip, enforce_two_factor=False)

    # ------------------------------------------------------------------
    # phone OTP login
    # ------------------------------------------------------------------
    async def request_phone_login_otp(self, phone: str) -> VerificationPreview:
        target = normalize_phone(phone)
        if not target:
            raise ValidationError("Phone number is required", detail={"field": "phone"})
        with self._guard("request_phone_login_otp"):
            existing = self.store.find_associate_by_phone(target)
            issued = self.verification.issue(
                KIND_PHONE,
                target,
                account_id=existing.account_id if existing else None,
                context=CONTEXT_PHONE_OTP,
            )
        await self._deliver(KIND_PHONE, target, issued)
        return self._preview(issued)

    async def login_with_otp(
        self, phone: str, otp: str, client_ip: Optional[str] = None
    ) -> LoginResult:
        target = normalize_phone(phone)
        if not target:
            raise ValidationError("Phone number is required", detail={"field": "phone"})
        await self._limit_check(SCOPE_OTP, target)
        try:
            with self._guard("login_with_otp"):
                self.verification.verify(KIND_PHONE, target, otp)
        except VerificationError:
            await self._limit_fail(SCOPE_OTP, target)
            raise
        await self._limit_reset(SCOPE_OTP, target)

        with self._guard("login_with_otp"):
            account = self._phone_account(target)
            return self._complete_login(
                account,
                client_ip,
                enforce_two_factor=self.settings.otp_login_enforces_two_factor,
            )

    def _phone_account(self, phone: str) -> Account:
        associate = self.store.find_associate_by_phone(phone)
        if associate:
            if not associate.phone_verified:
                self.store.update_associate(associate.id, phone_verified=True)
            return self._require_account(associate.account_id)
        try:
            account, _ = self.store.create_account_with_associate(
                provider=PROVIDER_PHONE,
                provider_ref_id=phone,
                nickname=f"user{secrets.randbelow(90000) + 10000}",
                phone=phone,
                phone_verified=True,
            )
            self.logger.info("phone_account_created", account_id=account.id)
            return account
        except ConstraintViolation:
            # A concurrent login created the binding first
            winner = self.store.get_associate(PROVIDER_PHONE, phone)
            if not winner:
                raise
            return self._require_account(winner.account_id)

    # ------------------------------------------------------------------
    # external providers
    # ------------------------------------------------------------------
    async def _resolve_profile(
        self, provider: str, credentials: Mapping[str, Any], trusted_server_flow: bool
    ) -> IdentityProfile:
        if trusted_server_flow:
            if provider not in VERIFIED_PROVIDERS:
                raise BadRequestError(
                    f"Server-side flow is not available for provider: {provider}"
                )
            provider_id = credentials.get("provider_id")
            if not provider_id:
                raise ValidationError(
                    "provider_id is required", detail={"field": "provider_id"}
                )
            return IdentityProfile(
                provider_id=str(provider_id),
                email=credentials.get("email"),
                nickname=credentials.get("nickname"),
            )
        if provider == PROVIDER_ANONYMOUS:
            provider_id = credentials.get("provider_id")
            if not provider_id:
                raise BadRequestError("provider_id is required for anonymous provider")
            return IdentityProfile(provider_id=str(provider_id))
        if provider not in VERIFIED_PROVIDERS:
            raise BadRequestError(f"Unsupported provider: {provider}")

        access_token = credentials.get("access_token")
        if not access_token:
            raise ValidationError(
                f"access_token is required for {provider} provider",
                detail={"field": "access_token"},
            )
        if not self.identity:
            raise TransientProviderError(f"{provider} sign-in is not configured")
        result = await self.identity.verify(provider, access_token)
        if result.ok and result.profile:
            return result.profile
        self.logger.warning("oauth_verification_failed", provider=provider, error=result.error)
        if result.error in (ERROR_UNAVAILABLE, ERROR_NOT_CONFIGURED):
            raise TransientProviderError(result.message or f"{provider} is unavailable")
        if result.error == ERROR_INVALID_TOKEN:
            raise UnauthorizedError(
                result.message or f"Invalid {provider} access token",
                reason="invalid_provider_token",
            )
        raise BadRequestError(result.message or f"Unsupported provider: {provider}")

    async def login_oauth(
        self,
        provider: str,
        credentials: Mapping[str, Any],
        client_ip: Optional[str] = None,
        *,
        trusted_server_flow: bool = False,
    ) -> LoginResult:
        provider = (provider or "").strip().lower()
        profile = await self._resolve_profile(provider, credentials or {}, trusted_server_flow)
        with self._guard("login_oauth"):
            associate = self.store.get_associate(provider, profile.provider_id)
            if associate:
                account = self._require_account(associate.account_id)
            else:
                account = self._attach_identity(provider, profile)
            return self._complete_login(account, client_ip)

    def _attach_identity(self, provider: str, profile: IdentityProfile) -> Account:
        email = normalize_email(profile.email) if profile.email else None
        account: Optional[Account] = None
        if email:
            by_email = self.store.find_associate_by_email(email)
            if by_email:
                account = self.store.get_account(by_email.account_id)
        try:
            if account is None:
                account, _ = self.store.create_account_with_associate(
                    provider=provider,
                    provider_ref_id=profile.provider_id,
                    nickname=profile.nickname or provider,
                    email=email,
                    email_verified=bool(email),
                )
                self.logger.info("oauth_account_created", provider=provider, account_id=account.id)
            else:
                self.store.create_associate(
                    account.id,
                    provider,
                    profile.provider_id,
                    email=email,
                    email_verified=bool(email),
                )
                self.logger.info("oauth_identity_attached", provider=provider, account_id=account.id)
        except ConstraintViolation:
            winner = self.store.get_associate(provider, profile.provider_id)
            if not winner:
                raise
            account = self._require_account(winner.account_id)
        return account

    async def link_provider(
        self,
        account_id: str,
        provider: str,
        ref_id: str,
        password: Optional[str] = None,
    ) -> Associate:
        provider = (provider or "").strip().lower()
        if provider not in PROVIDERS:
            raise BadRequestError(f"Unsupported provider: {provider}")
        raw_ref = (ref_id or "").strip()
        if not raw_ref:
            raise ValidationError("ref_id is required", detail={"field": "ref_id"})
        email, phone = split_identifier(raw_ref)
        ref = email or phone or raw_ref
        password_hash = None
        if provider == PROVIDER_PASSWORD:
            if not password:
                raise ValidationError(
                    "Password is required for password provider", detail={"field": "password"}
                )
            password_hash = self.passwords.hash(password)

        with self._guard("link_provider"):
            self._require_account(account_id)
            existing = self.store.get_associate(provider, ref)
            if existing:
                raise ConflictError("Provider already linked to an account")
            attrs: Dict[str, Any] = {"password_hash": password_hash}
            if email:
                attrs["email"] = email
            if phone and provider in (PROVIDER_PASSWORD, PROVIDER_PHONE):
                attrs["phone"] = phone
            try:
                associate = self.store.create_associate(account_id, provider, ref, **attrs)
            except ConstraintViolation:
                raise ConflictError("Provider already linked to an account")
        self.logger.info("provider_linked", account_id=account_id, provider=provider)
        return associate

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------
    async def refresh(self, refresh_token: str, client_ip: Optional[str] = None) -> SessionTokens:
        with self._guard("refresh"):
            account_id, new_refresh = self.tokens.rotate_refresh_token(refresh_token, client_ip)
            account = self.store.get_account(account_id)
            if not account:
                raise UnauthorizedError("Invalid refresh token", reason="invalid_refresh_token")
            access = self.tokens.issue_access_token(account.id, account.role)
        return SessionTokens(
            access_token=access.token,
            refresh_token=new_refresh,
            expires_in=access.expires_in,
            expires_at=access.expires_at,
        )

    async def logout(
        self,
        account_id: str,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> None:
        if refresh_token:
            with self._guard("logout"):
                self.tokens.revoke_refresh_token(refresh_token, expected_account_id=account_id)
        if access_token:
            try:
                self.tokens.denylist_access_token(access_token, account_id, reason="logout")
            except Exception as exc:
                self.logger.warning(
                    "access_token_denylist_failed", account_id=account_id, error=str(exc)
                )
        self.logger.info("logout_completed", account_id=account_id)

    # ------------------------------------------------------------------
    # registration and contact verification
    # ------------------------------------------------------------------
    async def register(
        self,
        *,
        password: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        nickname: Optional[str] = None,
        role: str = "user",
    ) -> RegistrationResult:
        email = normalize_email(email) if email else None
        phone = normalize_phone(phone) if phone else None
        if not email and not phone:
            raise ValidationError("Email or phone number is required")
        password_hash = self.passwords.hash(password)

        with self._guard("register"):
            if email and self.store.find_associate_by_email(email):
                raise ConflictError("Email already in use", detail={"field": "email"})
            if phone and self.store.find_associate_by_phone(phone):
                raise ConflictError("Phone number already in use", detail={"field": "phone"})
            try:
                account, associate = self.store.create_account_with_associate(
                    provider=PROVIDER_PASSWORD,
                    provider_ref_id=email or phone,
                    role=role,
                    nickname=nickname,
                    email=email,
                    phone=phone,
                    password_hash=password_hash,
                )
            except ConstraintViolation:
                if email:
                    raise ConflictError("Email already in use", detail={"field": "email"})
                raise ConflictError("Phone number already in use", detail={"field": "phone"})
            issued: Dict[str, IssuedCode] = {}
            if email:
                issued[KIND_EMAIL] = self.verification.issue(
                    KIND_EMAIL, email, account_id=account.id, context=CONTEXT_REGISTER
                )
            if phone:
                issued[KIND_PHONE] = self.verification.issue(
                    KIND_PHONE, phone, account_id=account.id, context=CONTEXT_REGISTER
                )

        self.logger.info("account_registered", account_id=account.id, kinds=sorted(issued))
        previews: Dict[str, VerificationPreview] = {}
        for kind, code in issued.items():
            await self._deliver(kind, code.record.target, code)
            previews[kind] = self._preview(code)
        return RegistrationResult(account=account, associate=associate, verifications=previews)

    async def _request_contact_code(self, kind: str, target: str) -> VerificationPreview:
        with self._guard("request_verification"):
            if kind == KIND_EMAIL:
                associate = self.store.find_associate_by_email(target)
                verified = associate.email_verified if associate else False
            else:
                associate = self.store.find_associate_by_phone(target)
                verified = associate.phone_verified if associate else False
            if not associate or verified:
                self.logger.info("verification_request_skipped", kind=kind)
                return VerificationPreview(message=GENERIC_CODE_MESSAGE)
            issued = self.verification.issue(
                kind, target, account_id=associate.account_id, context=CONTEXT_RESEND
            )
        await self._deliver(kind, target, issued)
        return self._preview(issued)

    async def request_email_verification(self, email: str) -> VerificationPreview:
        target = normalize_email(email)
        if not target:
            raise ValidationError("Email is required", detail={"field": "email"})
        return await self._request_contact_code(KIND_EMAIL, target)

    async def request_phone_verification(self, phone: str) -> VerificationPreview:
        target = normalize_phone(phone)
        if not target:
            raise ValidationError("Phone number is required", detail={"field": "phone"})
        return await self._request_contact_code(KIND_PHONE, target)

    async def _verify_contact(self, kind: str, target: str, code: str) -> ContactVerified:
        with self._guard("verify_contact"):
            record = self.verification.verify(kind, target, code)
            account_id = record.account_id
            if account_id is None:
                if kind == KIND_EMAIL:
                    owner = self.store.find_associate_by_email(target)
                else:
                    owner = self.store.find_associate_by_phone(target)
                account_id = owner.account_id if owner else None
            updated = (
                self.store.mark_contact_verified(kind, target, account_id) if account_id else []
            )
        if not updated:
            label = "email" if kind == KIND_EMAIL else "phone number"
            raise NotFoundError(f"Account not found for this {label}")
        self.logger.info("contact_verified", kind=kind, associates=len(updated))
        return ContactVerified(
            kind=kind,
            target=target,
            account_ids=sorted({a.account_id for a in updated}),
        )

    async def verify_email(self, email: str, code: str) -> ContactVerified:
        return await self._verify_contact(KIND_EMAIL, normalize_email(email), code)

    async def verify_phone(self, phone: str, code: str) -> ContactVerified:
        return await self._verify_contact(KIND_PHONE, normalize_phone(phone), code)

    # ------------------------------------------------------------------
    # password reset
    # ------------------------------------------------------------------
    async def request_password_reset(self, email: str) -> VerificationPreview:
        target = normalize_email(email)
        if not target:
            raise ValidationError("Email is required", detail={"field": "email"})
        with self._guard("request_password_reset"):
            associate = self.store.find_password_associate(email=target)
            if not associate:
                self.logger.info("password_reset_request_skipped")
                return VerificationPreview(message=GENERIC_CODE_MESSAGE)
            issued = self.verification.issue(
                KIND_EMAIL, target, account_id=associate.account_id, context=CONTEXT_PASSWORD_RESET
            )
        await self._deliver(KIND_EMAIL, target, issued, reset=True)
        return self._preview(issued)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        target = normalize_email(email)
        # Check the policy first so a weak password does not burn the code
        self.passwords.ensure_strong(new_password)
        with self._guard("reset_password"):
            self.verification.verify(KIND_EMAIL, target, code, context=CONTEXT_PASSWORD_RESET)
            associate = self.store.find_password_associate(email=target)
            if not associate:
                raise NotFoundError("Account not found")
            self.store.update_associate(
                associate.id, password_hash=self.passwords.hash(new_password)
            )
            self.tokens.revoke_all_refresh_tokens(associate.account_id)
        self.logger.info("password_reset_completed", account_id=associate.account_id)

    # ------------------------------------------------------------------
    # two-factor management
    # ------------------------------------------------------------------
    async def setup_two_factor(self, account_id: str) -> TwoFactorSetup:
        with self._guard("setup_two_factor"):
            account = self._require_account(account_id)
            if self.two_factor.is_enabled(account_id):
                raise BadRequestError("Two-factor authentication is already enabled")
            return self.two_factor.generate_secret(account)

    async def enable_two_factor(self, account_id: str, code: str) -> List[str]:
        with self._guard("enable_two_factor"):
            self._require_account(account_id)
            return self.two_factor.enable(account_id, code)

    async def disable_two_factor(self, account_id: str, code: str) -> None:
        await self._limit_check(SCOPE_TWO_FACTOR, account_id)
        try:
            with self._guard("disable_two_factor"):
                self.two_factor.disable(account_id, code)
        except BadRequestError:
            await self._limit_fail(SCOPE_TWO_FACTOR, account_id)
            raise
        await self._limit_reset(SCOPE_TWO_FACTOR, account_id)
