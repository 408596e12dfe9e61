"""SSO login and logout flows.

Each login attempt moves Initiated -> Succeeded | Failed. The orchestrator
never lets an SSOError escape a flow: it writes exactly one audit record for
the terminal outcome and returns a typed result.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog

from tessera.adapters.oidc.client import OIDCClient
from tessera.adapters.oidc.types import TokenResponse
from tessera.adapters.saml.codec import SAMLCodec
from tessera.core.attribute_mapper import email_domain, map_attributes
from tessera.core.audit import AuditLog
from tessera.core.auth_state import AuthStateStore
from tessera.core.configuration import require_role
from tessera.core.crypto import secure_random_string
from tessera.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    SSOError,
    StateError,
    ValidationError,
)
from tessera.core.interfaces import SSOConfigRepository, UserProvisioner, WorkspaceDirectory
from tessera.core.sessions import SessionService
from tessera.core.types import (
    AuditEventType,
    AuthState,
    OrgRole,
    ProvisioningRequest,
    RequestContext,
    ResolvedIdentity,
    SSOConfiguration,
    SSOProviderType,
    SSOSession,
    ValidationResult,
    Workspace,
)

logger = structlog.get_logger()

DEFAULT_SAML_CLOCK_SKEW_SECONDS = 300


@dataclass(frozen=True)
class InitiateResult:
    """Outcome of starting a login."""

    success: bool
    redirect_url: str | None = None
    state: str | None = None
    error: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of an IdP callback."""

    success: bool
    workspace_id: UUID | None = None
    config_id: UUID | None = None
    user_id: UUID | None = None
    session: SSOSession | None = None
    identity: ResolvedIdentity | None = None
    created: bool = False
    test_mode: bool = False
    error: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class LogoutResult:
    """Outcome of a logout flow."""

    success: bool
    redirect_url: str | None = None
    sessions_terminated: int = 0
    error: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class _Assertion:
    raw: dict[str, Any]
    subject: str
    idp_session_id: str | None = None
    tokens: TokenResponse | None = None


def saml_request_id(nonce: str) -> str:
    """AuthnRequest ID derived from the auth state nonce.

    Lets the callback check the Response's InResponseTo against the state.
    """
    return f"_{nonce}"


class SSOOrchestrator:
    """Runs initiate, callback and logout for SAML and OIDC configurations."""

    def __init__(
        self,
        *,
        configs: SSOConfigRepository,
        directory: WorkspaceDirectory,
        state_store: AuthStateStore,
        sessions: SessionService,
        provisioner: UserProvisioner,
        audit: AuditLog,
        saml_codec: SAMLCodec,
        oidc_client: OIDCClient,
        oidc_callback_url: str,
        saml_clock_skew_seconds: int = DEFAULT_SAML_CLOCK_SKEW_SECONDS,
    ) -> None:
        self._configs = configs
        self._directory = directory
        self._states = state_store
        self._sessions = sessions
        self._provisioner = provisioner
        self._audit = audit
        self._saml = saml_codec
        self._oidc = oidc_client
        self._oidc_callback_url = oidc_callback_url
        self._saml_skew = timedelta(seconds=saml_clock_skew_seconds)

    async def _workspace(self, config: SSOConfiguration) -> Workspace:
        workspace = await self._directory.get_workspace(config.workspace_id)
        if workspace is None:
            raise ConfigurationError(
                f"Workspace not found for configuration {config.id}", code="config_not_found"
            )
        return workspace

    # ------------------------------------------------------------------ #
    # Initiate
    # ------------------------------------------------------------------ #

    async def initiate(
        self,
        config_id: UUID,
        redirect_uri: str | None = None,
        *,
        initiated_by: UUID | None = None,
        context: RequestContext | None = None,
    ) -> InitiateResult:
        """Start a login and return the IdP redirect.

        Refuses outright, creating no state, when the configuration is neither
        enabled nor in test mode or is incomplete. OIDC endpoints are resolved
        before any state is stored.

        Args:
            config_id: Configuration to log in through.
            redirect_uri: Callback URI; defaults to the SP's own callback.
            initiated_by: Acting user, when known.
            context: Client information for the audit record.
        """
        config = await self._configs.get(config_id)
        if config is None:
            logger.warning("sso_initiate_unknown_config", config_id=str(config_id))
            return InitiateResult(success=False, error="SSO configuration not found", code="config_not_found")

        try:
            if not config.accepts_logins:
                raise ConfigurationError("SSO is not enabled for this configuration", code="config_disabled")
            missing = config.missing_fields()
            if missing:
                raise ConfigurationError(
                    "SSO configuration is incomplete",
                    code="config_incomplete",
                    details={"missing": missing},
                )

            if config.provider_type == SSOProviderType.SAML:
                workspace = await self._workspace(config)
                acs_url = self._saml.sp_endpoints(config, workspace.slug).acs_url
                grant = await self._states.create(
                    config, redirect_uri or acs_url, initiated_by=initiated_by, context=context
                )
                request = self._saml.build_authn_request(
                    config,
                    workspace.slug,
                    request_id=saml_request_id(grant.nonce),
                    relay_state=grant.state,
                )
                redirect_url = request.redirect_url
            else:
                endpoints = await self._oidc.resolve_endpoints(config)
                callback = redirect_uri or self._oidc_callback_url
                grant = await self._states.create(
                    config, callback, initiated_by=initiated_by, context=context
                )
                redirect_url = self._oidc.build_authorization_url(
                    config,
                    endpoints,
                    callback,
                    grant.state,
                    grant.nonce,
                    code_challenge=grant.code_challenge,
                )
        except SSOError as e:
            await self._audit.record_failure(
                AuditEventType.LOGIN_FAILED,
                e,
                workspace_id=config.workspace_id,
                config_id=config.id,
                user_id=initiated_by,
                context=context,
            )
            return InitiateResult(success=False, error=e.message, code=e.code)

        logger.info("sso_login_initiated", config_id=str(config.id), provider=config.provider_type.value)
        return InitiateResult(success=True, redirect_url=redirect_url, state=grant.state)

    # ------------------------------------------------------------------ #
    # Callback
    # ------------------------------------------------------------------ #

    async def handle_callback(
        self,
        state: str,
        *,
        saml_response: str | None = None,
        code: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
        context: RequestContext | None = None,
        now: datetime | None = None,
    ) -> CallbackResult:
        """Complete a login from the IdP's response.

        Args:
            state: The ``state`` (OIDC) or ``RelayState`` (SAML) value.
            saml_response: Base64 ``SAMLResponse`` for SAML.
            code: Authorization code for OIDC.
            error: OAuth error parameter, when the IdP reported one.
            error_description: OAuth error description.
            context: Client information for the audit record.
            now: Current time override.

        Returns:
            The callback outcome. Exactly one ``login_succeeded`` or
            ``login_failed`` audit record has been written.
        """
        now = now or datetime.now(UTC)

        validation = await self._states.validate(state, now)
        auth_state = validation.auth_state
        if not validation.valid or auth_state is None:
            state_error = StateError(validation.error or "Invalid state", code=validation.code)
            await self._audit.record_failure(
                AuditEventType.LOGIN_FAILED,
                state_error,
                workspace_id=validation.workspace_id,
                config_id=validation.config_id,
                context=context,
            )
            return CallbackResult(
                success=False,
                workspace_id=validation.workspace_id,
                config_id=validation.config_id,
                error=state_error.message,
                code=state_error.code,
            )

        config: SSOConfiguration | None = None

        try:
            config = await self._configs.get(auth_state.config_id)
            if config is None:
                raise ConfigurationError("SSO configuration not found", code="config_not_found")
            if error:
                message = f"Identity provider returned an error: {error}"
                if error_description:
                    message = f"{message} ({error_description})"
                raise ProtocolError(message, code="idp_error")
            if not config.accepts_logins:
                raise ConfigurationError("SSO is not enabled for this configuration", code="config_disabled")

            if config.provider_type == SSOProviderType.SAML:
                assertion = await self._saml_assertion(config, auth_state, saml_response, now)
            else:
                assertion = await self._oidc_assertion(config, auth_state, code, now)

            identity = map_attributes(config, assertion.raw)
            if not config.email_domain_allowed(email_domain(identity.email)):
                raise ValidationError(
                    f"Email domain {email_domain(identity.email)} is not allowed",
                    code="domain_not_allowed",
                )

            provisioned = await self._provisioner.provision(
                ProvisioningRequest(
                    workspace_id=config.workspace_id,
                    email=identity.email,
                    role=identity.role,
                    name=identity.name,
                    avatar=identity.avatar,
                    allow_create=config.jit_provisioning,
                )
            )
            if not provisioned.success or provisioned.user_id is None:
                raise SSOError(provisioned.error or "User provisioning failed", code="provisioning_failed")

            session = await self._sessions.create(
                user_id=provisioned.user_id,
                config=config,
                idp_subject=assertion.subject,
                idp_session_id=assertion.idp_session_id,
                tokens=assertion.tokens,
                context=context,
                now=now,
            )
            await self._configs.touch_usage(
                config.id, last_used_at=now, tested_at=now if config.test_mode else None
            )
        except SSOError as e:
            await self._audit.record_failure(
                AuditEventType.LOGIN_FAILED,
                e,
                workspace_id=auth_state.workspace_id,
                config_id=auth_state.config_id,
                context=context,
            )
            logger.warning("sso_login_failed", config_id=str(auth_state.config_id), code=e.code)
            return CallbackResult(
                success=False,
                workspace_id=auth_state.workspace_id,
                config_id=auth_state.config_id,
                test_mode=bool(config and config.test_mode),
                error=e.message,
                code=e.code,
            )

        await self._audit.record(
            AuditEventType.LOGIN_SUCCEEDED,
            workspace_id=config.workspace_id,
            config_id=config.id,
            user_id=provisioned.user_id,
            session_id=session.id,
            metadata={
                "provider": config.provider_type.value,
                "email": identity.email,
                "role": identity.role.value,
                "created": provisioned.created,
                "test_mode": config.test_mode,
            },
            context=context,
        )
        logger.info("sso_login_succeeded", config_id=str(config.id), session_id=str(session.id))
        return CallbackResult(
            success=True,
            workspace_id=config.workspace_id,
            config_id=config.id,
            user_id=provisioned.user_id,
            session=session,
            identity=identity,
            created=provisioned.created,
            test_mode=config.test_mode,
        )

    async def _saml_assertion(
        self,
        config: SSOConfiguration,
        auth_state: AuthState,
        saml_response: str | None,
        now: datetime,
    ) -> _Assertion:
        if not saml_response:
            raise ProtocolError("Missing SAMLResponse", code="invalid_response")

        parsed = self._saml.parse_response(saml_response)
        if not parsed.success or parsed.assertion is None or parsed.raw_xml is None:
            raise ProtocolError(parsed.error or "Invalid SAML response", code=parsed.code or "invalid_response")
        assertion = parsed.assertion

        signature = self._saml.validate_signature(parsed.raw_xml, config.saml_certificate or "")
        if not signature.valid:
            raise ValidationError(signature.error or "Invalid SAML signature", code="signature_invalid")
        signed_id = signature.details.get("signed_id")
        if not signed_id or signed_id not in (assertion.response_id, assertion.assertion_id):
            raise ValidationError("Signature does not cover the SAML assertion", code="signature_invalid")

        workspace = await self._workspace(config)
        audience = self._saml.sp_endpoints(config, workspace.slug).entity_id
        conditions = self._saml.validate_conditions(assertion, audience, self._saml_skew, now)
        if not conditions.valid:
            raise ValidationError(conditions.error or "Invalid assertion conditions", code="conditions_invalid")

        if config.saml_entity_id and assertion.issuer != config.saml_entity_id:
            raise ValidationError(
                f"Invalid issuer: expected {config.saml_entity_id}, got {assertion.issuer}",
                code="issuer_mismatch",
            )
        if assertion.in_response_to and assertion.in_response_to != saml_request_id(auth_state.nonce):
            raise ValidationError("Response does not answer this login request", code="conditions_invalid")

        extracted = self._saml.extract_attributes(assertion)
        raw: dict[str, Any] = {**extracted.as_claims(), **assertion.attributes}
        raw["nameId"] = assertion.name_id
        return _Assertion(
            raw=raw,
            subject=assertion.name_id,
            idp_session_id=assertion.session_index,
        )

    async def _oidc_assertion(
        self,
        config: SSOConfiguration,
        auth_state: AuthState,
        code: str | None,
        now: datetime,
    ) -> _Assertion:
        if not code:
            raise ProtocolError("Missing authorization code", code="invalid_response")

        tokens = await self._oidc.exchange_code(
            config, code, auth_state.redirect_uri, auth_state.code_verifier
        )
        if not tokens.id_token:
            raise ProtocolError("Token response did not include an id_token", code="id_token_invalid")

        validation = await self._oidc.validate_id_token(
            tokens.id_token, config, expected_nonce=auth_state.nonce, now=now
        )
        if not validation.valid or validation.claims is None:
            raise ValidationError(validation.error or "Invalid ID token", code=validation.code or "id_token_invalid")
        claims = dict(validation.claims)

        endpoints = await self._oidc.resolve_endpoints(config)
        if endpoints.userinfo_endpoint:
            userinfo = await self._oidc.get_user_info(config, tokens.access_token)
            if userinfo.get("sub") != claims.get("sub"):
                raise ValidationError("UserInfo subject does not match the ID token", code="userinfo_failed")
            # ID token claims are signature-verified, so they win on conflict.
            claims = {**userinfo, **claims}

        return _Assertion(raw=claims, subject=str(claims.get("sub", "")), tokens=tokens)

    # ------------------------------------------------------------------ #
    # Logout
    # ------------------------------------------------------------------ #

    async def logout(
        self,
        session_id: UUID,
        *,
        post_logout_redirect_uri: str | None = None,
        actor_id: UUID | None = None,
        context: RequestContext | None = None,
    ) -> LogoutResult:
        """SP-initiated logout.

        Ends the local session and, when the IdP supports it, returns the URL
        that signs the user out there too (a SAML LogoutRequest or the OIDC
        end_session_endpoint).

        Args:
            session_id: Session to end.
            post_logout_redirect_uri: Where the IdP should send the browser afterwards.
            actor_id: Requesting user. Anyone other than the session owner must
                be a workspace admin. None for internal callers.
            context: Client details for the audit trail.
        """
        try:
            session = await self._sessions.get(session_id)
        except NotFoundError as e:
            return LogoutResult(success=False, error=str(e), code="not_found")

        if actor_id is not None and actor_id != session.user_id:
            try:
                await require_role(
                    self._directory, session.workspace_id, actor_id, OrgRole.ADMIN, "end other users' sessions"
                )
            except PermissionDeniedError as e:
                return LogoutResult(success=False, error=str(e), code="permission_denied")

        config = await self._configs.get(session.config_id)
        await self._audit.record(
            AuditEventType.LOGOUT_INITIATED,
            workspace_id=session.workspace_id,
            config_id=session.config_id,
            user_id=session.user_id,
            session_id=session.id,
            context=context,
        )

        redirect_url: str | None = None
        failure: SSOError | None = None
        if config is not None:
            try:
                redirect_url = await self._idp_logout_url(config, session, post_logout_redirect_uri)
            except SSOError as e:
                failure = e

        await self._sessions.terminate(session.id, reason="user_logout", context=context)

        if failure is not None:
            await self._audit.record_failure(
                AuditEventType.LOGOUT_FAILED,
                failure,
                workspace_id=session.workspace_id,
                config_id=session.config_id,
                user_id=session.user_id,
                session_id=session.id,
                context=context,
            )
            return LogoutResult(
                success=False,
                sessions_terminated=1,
                error=failure.message,
                code=failure.code,
            )
        return LogoutResult(success=True, redirect_url=redirect_url, sessions_terminated=1)

    async def _idp_logout_url(
        self,
        config: SSOConfiguration,
        session: SSOSession,
        post_logout_redirect_uri: str | None,
    ) -> str | None:
        if config.provider_type == SSOProviderType.SAML:
            if not config.saml_slo_url:
                return None
            workspace = await self._workspace(config)
            request = self._saml.build_logout_request(
                config,
                workspace.slug,
                name_id=session.idp_subject,
                session_index=session.idp_session_id,
                relay_state=post_logout_redirect_uri,
            )
            return request.redirect_url
        return await self._oidc.build_logout_url(
            config,
            id_token_hint=session.id_token,
            post_logout_redirect_uri=post_logout_redirect_uri,
            state=secure_random_string(32),
        )

    async def handle_idp_logout(
        self,
        config_id: UUID,
        saml_request: str,
        *,
        relay_state: str | None = None,
        deflated: bool = True,
        signed_query: str | None = None,
        context: RequestContext | None = None,
    ) -> LogoutResult:
        """Handle an IdP-initiated SAML LogoutRequest.

        The request must be signed by the configured IdP certificate: an
        enveloped XML signature over the LogoutRequest for the POST binding,
        or the query-string signature for the redirect binding. Terminates the
        matching sessions (by SessionIndex, else by NameID) and returns the
        LogoutResponse redirect for the IdP.

        Args:
            config_id: Configuration the IdP is logging out of.
            saml_request: ``SAMLRequest`` value.
            relay_state: Echoed back on the LogoutResponse.
            deflated: True for the redirect binding.
            signed_query: Raw query string of a redirect binding request.
            context: Client details for the audit trail.
        """
        config = await self._configs.get(config_id)
        if config is None or config.provider_type != SSOProviderType.SAML:
            return LogoutResult(success=False, error="SAML configuration not found", code="config_not_found")

        try:
            info = self._saml.parse_logout_request(saml_request, deflated=deflated)
            if not info.success or not info.id:
                raise ProtocolError(info.error or "Invalid LogoutRequest", code="invalid_response")
            if config.saml_entity_id and info.issuer and info.issuer != config.saml_entity_id:
                raise ValidationError(
                    f"Invalid issuer: expected {config.saml_entity_id}, got {info.issuer}",
                    code="issuer_mismatch",
                )
            self._verify_logout_signature(
                config, saml_request, info.id, deflated=deflated, signed_query=signed_query
            )

            sessions: list[SSOSession] = []
            if info.session_index:
                match = await self._sessions.find_by_idp_session(config.id, info.session_index)
                if match is not None:
                    sessions.append(match)
            elif info.name_id:
                sessions = await self._sessions.find_by_subject(config.id, info.name_id)

            for session in sessions:
                await self._sessions.terminate(session.id, reason="idp_logout", context=context)

            redirect_url = None
            if config.saml_slo_url:
                workspace = await self._workspace(config)
                response = self._saml.build_logout_response(
                    config, workspace.slug, info.id, success=True, relay_state=relay_state
                )
                redirect_url = response.redirect_url
        except SSOError as e:
            await self._audit.record_failure(
                AuditEventType.LOGOUT_FAILED,
                e,
                workspace_id=config.workspace_id,
                config_id=config.id,
                context=context,
            )
            return LogoutResult(success=False, error=e.message, code=e.code)

        logger.info("sso_idp_logout", config_id=str(config.id), sessions=len(sessions))
        return LogoutResult(success=True, redirect_url=redirect_url, sessions_terminated=len(sessions))

    def _verify_logout_signature(
        self,
        config: SSOConfiguration,
        saml_request: str,
        request_id: str,
        *,
        deflated: bool,
        signed_query: str | None,
    ) -> None:
        certificate = config.saml_certificate or ""
        if deflated:
            result = self._saml.verify_redirect_signature(signed_query or "", certificate)
        else:
            xml = self._saml.decode_message(saml_request, deflated=False)
            result = self._saml.validate_signature(xml, certificate)
            if result.valid and result.details.get("signed_id") != request_id:
                result = ValidationResult.fail(
                    "Signature does not cover the LogoutRequest", code="signature_invalid"
                )
        if not result.valid:
            logger.warning("sso_idp_logout_unsigned", config_id=str(config.id), code=result.code)
            raise ValidationError(result.error or "Invalid LogoutRequest signature", code="signature_invalid")

    async def handle_logout_response(
        self,
        config_id: UUID,
        saml_response: str,
        *,
        deflated: bool = True,
        context: RequestContext | None = None,
    ) -> LogoutResult:
        """Handle the IdP's LogoutResponse to an SP-initiated logout."""
        config = await self._configs.get(config_id)
        if config is None or config.provider_type != SSOProviderType.SAML:
            return LogoutResult(success=False, error="SAML configuration not found", code="config_not_found")

        info = self._saml.parse_logout_response(saml_response, deflated=deflated)
        if info.success:
            return LogoutResult(success=True)

        failure = ProtocolError(info.error or "IdP logout failed", code="saml_status")
        await self._audit.record_failure(
            AuditEventType.LOGOUT_FAILED,
            failure,
            workspace_id=config.workspace_id,
            config_id=config.id,
            context=context,
        )
        return LogoutResult(success=False, error=failure.message, code=failure.code)
