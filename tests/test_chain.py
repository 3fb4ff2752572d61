"""Unit tests for auth/chain.py -- the two-stage authentication chain.

The chain is exercised without FastAPI: a RequestContext is built from a
plain header dict and run through build_chain() over real stores.

Covers:
- Stage 1 outcomes: absent, malformed, empty, invalid, valid
- Stage 2 outcomes: absent, without stage 1, malformed, expired, bad signature,
  missing user, deleted user, valid
- Ordering: a stage-1 rejection stops the chain before stage 2 runs
- Header names are case-insensitive; the session header is configurable
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from auth.chain import (
    AuthenticationChain,
    RequestContext,
    ServiceCredentialStage,
    SessionTokenStage,
    build_chain,
)
from auth.errors import AuthRejection, ErrorCode
from auth.models import User
from auth.store import UserStore


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def user(users: UserStore) -> User:
    return users.save(User(email="chain@example.com", provider_id=501, provider_login="chainer"))


@pytest.fixture
def chain(credential_service, codec, users):
    return build_chain(credential_service, codec, users)


@pytest.fixture
def api_key(credential_service) -> str:
    raw, _record = credential_service.issue("chain tests")
    return raw


def _run(chain: AuthenticationChain, headers: dict) -> tuple[RequestContext, AuthRejection | None]:
    ctx = RequestContext.from_headers(headers)
    return ctx, chain.run(ctx)


class TestServiceCredentialStage:
    def test_no_headers_passes_unauthenticated(self, chain) -> None:
        ctx, rejection = _run(chain, {})
        assert rejection is None
        assert ctx.service_authenticated is False
        assert ctx.credential is None
        assert ctx.user is None

    @pytest.mark.parametrize("value", ["Basic abc", "bearer abc", "Token xyz", "Bearer"])
    def test_non_bearer_scheme(self, chain, value: str) -> None:
        _ctx, rejection = _run(chain, {"Authorization": value})
        assert rejection.code is ErrorCode.MALFORMED_HEADER
        assert rejection.status_code == 400

    def test_empty_key(self, chain) -> None:
        _ctx, rejection = _run(chain, {"Authorization": "Bearer    "})
        assert rejection.code is ErrorCode.EMPTY_API_KEY
        assert rejection.status_code == 400

    def test_unknown_key(self, chain) -> None:
        _ctx, rejection = _run(chain, {"Authorization": "Bearer " + "x" * 32})
        assert rejection.code is ErrorCode.INVALID_API_KEY
        assert rejection.status_code == 401

    def test_valid_key_attaches_credential(self, chain, api_key: str) -> None:
        ctx, rejection = _run(chain, {"Authorization": f"Bearer {api_key}"})
        assert rejection is None
        assert ctx.service_authenticated is True
        assert ctx.credential.prefix == api_key[:8]
        assert ctx.credential.request_count == 1

    def test_revoked_key(self, chain, credential_service) -> None:
        raw, record = credential_service.issue("revoked")
        credential_service.revoke(record.id)
        _ctx, rejection = _run(chain, {"Authorization": f"Bearer {raw}"})
        assert rejection.code is ErrorCode.INVALID_API_KEY

    def test_header_name_is_case_insensitive(self, chain, api_key: str) -> None:
        ctx, rejection = _run(chain, {"authorization": f"Bearer {api_key}"})
        assert rejection is None
        assert ctx.service_authenticated is True


class TestSessionTokenStage:
    def test_token_without_service_key(self, chain, codec, user: User) -> None:
        _ctx, rejection = _run(chain, {"X-User-Token": codec.issue(user.id, user.email)})
        assert rejection.code is ErrorCode.MISSING_API_KEY
        assert rejection.status_code == 401

    def test_valid_token_attaches_user(self, chain, codec, api_key: str, user: User) -> None:
        ctx, rejection = _run(
            chain,
            {"Authorization": f"Bearer {api_key}", "X-User-Token": codec.issue(user.id, user.email)},
        )
        assert rejection is None
        assert ctx.user.id == user.id
        assert ctx.user.email == "chain@example.com"

    def test_service_key_alone_has_no_user(self, chain, api_key: str) -> None:
        ctx, rejection = _run(chain, {"Authorization": f"Bearer {api_key}"})
        assert rejection is None
        assert ctx.user is None

    def test_malformed_token(self, chain, api_key: str) -> None:
        _ctx, rejection = _run(chain, {"Authorization": f"Bearer {api_key}", "X-User-Token": "garbage"})
        assert rejection.code is ErrorCode.MALFORMED_TOKEN
        assert rejection.status_code == 400

    def test_expired_token(self, chain, codec, api_key: str, user: User) -> None:
        token = codec.issue(user.id, user.email, now=datetime.now(timezone.utc) - timedelta(days=2))
        _ctx, rejection = _run(chain, {"Authorization": f"Bearer {api_key}", "X-User-Token": token})
        assert rejection.code is ErrorCode.TOKEN_EXPIRED
        assert rejection.status_code == 401

    def test_bad_signature(self, chain, codec, api_key: str, user: User) -> None:
        header, payload, signature = codec.issue(user.id, user.email).split(".")
        forged = ".".join([header, payload, ("A" if signature[0] != "A" else "B") + signature[1:]])
        _ctx, rejection = _run(chain, {"Authorization": f"Bearer {api_key}", "X-User-Token": forged})
        assert rejection.code is ErrorCode.INVALID_SIGNATURE

    def test_unknown_user(self, chain, codec, api_key: str) -> None:
        _ctx, rejection = _run(
            chain,
            {"Authorization": f"Bearer {api_key}", "X-User-Token": codec.issue(987654, "ghost@example.com")},
        )
        assert rejection.code is ErrorCode.USER_NOT_FOUND
        assert rejection.status_code == 401

    def test_soft_deleted_user(self, chain, codec, api_key: str, users: UserStore, user: User) -> None:
        token = codec.issue(user.id, user.email)
        users.soft_delete(user.id)
        _ctx, rejection = _run(chain, {"Authorization": f"Bearer {api_key}", "X-User-Token": token})
        assert rejection.code is ErrorCode.USER_NOT_FOUND

    def test_custom_header_name(self, credential_service, codec, users: UserStore, api_key: str, user: User) -> None:
        chain = build_chain(credential_service, codec, users, session_header="X-Session")
        ctx, rejection = _run(
            chain,
            {"Authorization": f"Bearer {api_key}", "x-session": codec.issue(user.id, user.email)},
        )
        assert rejection is None
        assert ctx.user.id == user.id


class TestOrdering:
    def test_stage_one_rejection_short_circuits(self, credential_service, codec) -> None:
        """A bad service key must stop the chain; the user store is never consulted."""
        users = MagicMock(spec=UserStore)
        chain = build_chain(credential_service, codec, users)
        _ctx, rejection = _run(
            chain,
            {"Authorization": "Bearer " + "y" * 32, "X-User-Token": codec.issue(1, "a@example.com")},
        )
        assert rejection.code is ErrorCode.INVALID_API_KEY
        users.get_active_by_id.assert_not_called()

    def test_stages_run_in_order(self, credential_service, codec, users: UserStore) -> None:
        chain = build_chain(credential_service, codec, users)
        assert [type(s) for s in chain.stages] == [ServiceCredentialStage, SessionTokenStage]

    def test_custom_stage_list(self) -> None:
        calls: list[str] = []

        def first(ctx: RequestContext):
            calls.append("first")
            return AuthRejection(ErrorCode.MALFORMED_HEADER, "stop")

        def second(ctx: RequestContext):
            calls.append("second")
            return None

        rejection = AuthenticationChain([first, second]).run(RequestContext())
        assert rejection.code is ErrorCode.MALFORMED_HEADER
        assert calls == ["first"]

    def test_store_failure_propagates(self, credential_service, codec) -> None:
        users = MagicMock(spec=UserStore)
        users.get_active_by_id.side_effect = RuntimeError("database is down")
        chain = build_chain(credential_service, codec, users)
        raw, _record = credential_service.issue("outage")
        with pytest.raises(RuntimeError):
            _run(chain, {"Authorization": f"Bearer {raw}", "X-User-Token": codec.issue(1, "a@example.com")})


class TestRejectionBody:
    def test_body_shape(self) -> None:
        body = AuthRejection(ErrorCode.TOKEN_EXPIRED, "expired").to_body(now=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert body == {
            "error": "Unauthorized",
            "message": "expired",
            "errorCode": "TOKEN_EXPIRED",
            "timestamp": "2024-01-01T00:00:00+00:00",
        }

    @pytest.mark.parametrize(
        ("code", "status"),
        [
            (ErrorCode.MALFORMED_HEADER, 400),
            (ErrorCode.EMPTY_API_KEY, 400),
            (ErrorCode.INVALID_API_KEY, 401),
            (ErrorCode.MISSING_API_KEY, 401),
            (ErrorCode.MALFORMED_TOKEN, 400),
            (ErrorCode.TOKEN_EXPIRED, 401),
            (ErrorCode.INVALID_SIGNATURE, 401),
            (ErrorCode.USER_NOT_FOUND, 401),
            (ErrorCode.MISSING_USER_TOKEN, 401),
            (ErrorCode.ADMIN_REQUIRED, 403),
            (ErrorCode.INVALID_PROVIDER_TOKEN, 401),
            (ErrorCode.ACCESS_DENIED, 403),
        ],
    )
    def test_each_code_has_one_status(self, code: ErrorCode, status: int) -> None:
        assert code.status_code == status
