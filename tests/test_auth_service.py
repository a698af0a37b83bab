"""
Tests for token verification and the permission table.
"""
import pytest
from datetime import timedelta

import jwt

from chat_relay.errors import AuthenticationFailedError, PermissionDeniedError
from chat_relay.models.schemas import Identity, Role
from chat_relay.services.auth_service import ANONYMOUS
from chat_relay.services.permissions import check_permission, is_allowed, is_staff
from chat_relay.utils.clock import utcnow


def encode(claims, secret="test-secret-key"):
    return jwt.encode(claims, secret, algorithm="HS256")


class TestAuthService:

    def test_token_roundtrip(self, auth_service):
        token = auth_service.create_token("user-1", role="psikolog", name="Dr. Sari")

        identity = auth_service.verify_token(token)

        assert identity.user_id == "user-1"
        assert identity.role == Role.PSIKOLOG
        assert identity.display_name == "Dr. Sari"

    def test_expired_token(self, auth_service):
        token = encode({"sub": "user-1", "exp": utcnow() - timedelta(minutes=1)})

        with pytest.raises(AuthenticationFailedError, match="expired"):
            auth_service.verify_token(token)

    def test_wrong_secret(self, auth_service):
        token = encode({"sub": "user-1"}, secret="another-secret")

        with pytest.raises(AuthenticationFailedError, match="Invalid token"):
            auth_service.verify_token(token)

    def test_garbage_token(self, auth_service):
        with pytest.raises(AuthenticationFailedError):
            auth_service.verify_token("not-a-jwt")

    def test_missing_subject(self, auth_service):
        with pytest.raises(AuthenticationFailedError, match="payload"):
            auth_service.verify_token(encode({"role": "user"}))

    def test_numeric_id_claim(self, auth_service):
        identity = auth_service.verify_token(encode({"id": 42, "role": "staff", "email": "a@b.c"}))

        assert identity.user_id == "42"
        assert identity.role == Role.STAFF
        assert identity.email == "a@b.c"

    @pytest.mark.parametrize("claim", [None, "", "superuser", "ANONYMOUS-ish"])
    def test_unknown_role_is_user(self, auth_service, claim):
        claims = {"sub": "user-1"}
        if claim is not None:
            claims["role"] = claim

        assert auth_service.verify_token(encode(claims)).role == Role.USER

    def test_role_claim_is_case_insensitive(self, auth_service):
        assert auth_service.verify_token(encode({"sub": "a", "role": "ADMIN"})).role == Role.ADMIN

    def test_no_token_is_anonymous(self, auth_service):
        assert auth_service.authenticate(None) is ANONYMOUS
        assert auth_service.authenticate("") is ANONYMOUS
        assert ANONYMOUS.is_anonymous

    def test_invalid_token_is_not_downgraded(self, auth_service):
        with pytest.raises(AuthenticationFailedError):
            auth_service.authenticate("not-a-jwt")


class TestPermissions:

    @pytest.mark.parametrize("role", [Role.ADMIN, Role.STAFF, Role.PSIKOLOG])
    def test_staff_roles(self, role):
        identity = Identity(user_id="s", role=role)
        assert is_staff(identity)
        assert is_allowed("close_session", role)
        assert is_allowed("staff_join_session", role)

    @pytest.mark.parametrize("role", [Role.USER, Role.ANONYMOUS])
    def test_non_staff_roles(self, role):
        assert not is_staff(Identity(user_id="u", role=role))
        assert not is_allowed("close_session", role)
        assert not is_allowed("staff_join_session", role)
        assert not is_allowed("join_staff_group", role)
        assert is_allowed("send_message", role)
        assert is_allowed("request_escalation", role)

    def test_history_requires_authentication(self):
        assert is_allowed("view_history", Role.USER)
        assert not is_allowed("view_history", Role.ANONYMOUS)

    def test_admin_only_actions(self):
        assert is_allowed("view_stats", Role.ADMIN)
        assert not is_allowed("view_stats", Role.PSIKOLOG)

    def test_unknown_action_denied(self):
        assert not is_allowed("format_disk", Role.ADMIN)

    def test_check_permission_raises(self, user_identity):
        with pytest.raises(PermissionDeniedError) as exc_info:
            check_permission("close_session", user_identity)

        assert exc_info.value.details == {"action": "close_session"}
        assert exc_info.value.to_event()["code"] == "permission_denied"
