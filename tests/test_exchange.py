"""Unit tests for auth/exchange.py -- OAuthExchangeService.

GitHub is a MagicMock; stores are real in-memory SQLite.

Covers:
- Rejected GitHub token -> InvalidProviderToken, nothing written
- Identity not on the allow-list -> AccessDenied, no user row created
- Email already linked to another GitHub id, or a deleted account -> AccessDenied
- Allow-listed identity -> user provisioned and a verifiable session token
- Repeat exchange reuses the same user
- GitHub outages propagate instead of becoming auth failures
"""

from unittest.mock import MagicMock

import pytest
import requests

from auth.allowlist import AllowListGate
from auth.errors import ErrorCode
from auth.exchange import ExchangeFailure, ExchangeSuccess, OAuthExchangeService
from auth.github import GitHubClient
from auth.models import AllowListEntry, ProviderProfile, User
from auth.provisioning import UserProvisioner
from auth.store import AllowListStore, UserStore
from auth.tokens import SessionClaims

OCTOCAT = ProviderProfile(provider_id=583231, login="octocat", email="octocat@github.com", name="The Octocat")


@pytest.fixture
def github() -> MagicMock:
    return MagicMock(spec=GitHubClient)


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def allow_list(engine) -> AllowListStore:
    return AllowListStore(engine)


@pytest.fixture
def service(github, users, allow_list, codec) -> OAuthExchangeService:
    return OAuthExchangeService(github, AllowListGate(allow_list), UserProvisioner(users), codec)


class TestExchangeFailures:
    def test_rejected_provider_token(self, service, github, users) -> None:
        github.fetch_profile.return_value = None
        result = service.exchange_token("gho_bad")
        assert isinstance(result, ExchangeFailure)
        assert result.code is ErrorCode.INVALID_PROVIDER_TOKEN
        assert result.status_code == 401
        assert users.count() == 0

    def test_not_allow_listed(self, service, github, users) -> None:
        github.fetch_profile.return_value = OCTOCAT
        result = service.exchange_token("gho_valid")
        assert isinstance(result, ExchangeFailure)
        assert result.code is ErrorCode.ACCESS_DENIED
        assert result.status_code == 403
        assert users.count() == 0, "A refused identity must not create a user row"

    def test_allow_list_checked_before_provisioning(self, github, allow_list, codec) -> None:
        provisioner = MagicMock(spec=UserProvisioner)
        service = OAuthExchangeService(github, AllowListGate(allow_list), provisioner, codec)
        github.fetch_profile.return_value = OCTOCAT
        service.exchange_token("gho_valid")
        provisioner.find_or_create.assert_not_called()

    def test_email_linked_to_other_account(self, service, github, allow_list, users) -> None:
        owner = users.save(User(email="octocat@github.com", provider_id=1, provider_login="original"))
        allow_list.add(AllowListEntry(provider_id=OCTOCAT.provider_id, provider_login="octocat"))
        github.fetch_profile.return_value = OCTOCAT

        result = service.exchange_token("gho_valid")

        assert isinstance(result, ExchangeFailure)
        assert result.code is ErrorCode.ACCESS_DENIED
        assert result.status_code == 403
        assert users.get_by_id(owner.id).provider_login == "original"

    def test_deleted_user_gets_no_token(self, service, github, allow_list, users) -> None:
        allow_list.add(AllowListEntry(provider_id=OCTOCAT.provider_id, provider_login="octocat"))
        github.fetch_profile.return_value = OCTOCAT
        first = service.exchange_token("gho_valid")
        users.soft_delete(first.user.id)

        result = service.exchange_token("gho_valid")

        assert isinstance(result, ExchangeFailure)
        assert result.code is ErrorCode.ACCESS_DENIED

    def test_github_outage_propagates(self, service, github) -> None:
        github.fetch_profile.side_effect = requests.HTTPError("502 Bad Gateway")
        with pytest.raises(requests.HTTPError):
            service.exchange_token("gho_any")


class TestExchangeSuccess:
    def test_provisions_and_issues_token(self, service, github, allow_list, users, codec) -> None:
        allow_list.add(AllowListEntry(provider_id=OCTOCAT.provider_id, provider_login="octocat"))
        github.fetch_profile.return_value = OCTOCAT

        result = service.exchange_token("gho_valid")

        assert isinstance(result, ExchangeSuccess), f"Expected success, got {result!r}"
        assert result.user.provider_id == OCTOCAT.provider_id
        assert result.user.admin is False
        claims = codec.verify(result.token)
        assert isinstance(claims, SessionClaims)
        assert claims.user_id == result.user.id
        assert claims.email == "octocat@github.com"
        assert users.count() == 1
        github.fetch_profile.assert_called_once_with("gho_valid")

    def test_repeat_exchange_reuses_user(self, service, github, allow_list, users) -> None:
        allow_list.add(AllowListEntry(provider_id=OCTOCAT.provider_id, provider_login="octocat"))
        github.fetch_profile.return_value = OCTOCAT
        first = service.exchange_token("gho_one")
        second = service.exchange_token("gho_two")
        assert first.user.id == second.user.id
        assert users.count() == 1

    def test_complete_login_accepts_profile_directly(self, service, github, allow_list) -> None:
        allow_list.add(AllowListEntry(provider_id=OCTOCAT.provider_id, provider_login="octocat"))
        result = service.complete_login(OCTOCAT)
        assert isinstance(result, ExchangeSuccess)
        github.fetch_profile.assert_not_called()

    def test_complete_login_without_profile(self, service) -> None:
        result = service.complete_login(None)
        assert result.code is ErrorCode.INVALID_PROVIDER_TOKEN
