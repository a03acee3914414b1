import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.exceptions import (
    AddressMismatch,
    ExpiredChallenge,
    InvalidActivityType,
    InvalidSignature,
    InvalidWalletAddress,
    NoChallenge,
    ReplayedChallenge,
    SessionRevoked,
    StorageUnavailable,
)
from app.db.session import init_db
from app.models.auth import WalletSession
from app.services.activity_log import ActivityFilter, ActivityLog, ActivityType
from app.services.auth_service import AuthService, AuthState
from app.services.session_manager import AuthSession


def _events(activity_log: ActivityLog, activity_type: ActivityType, wallet_address: str = None):
    return list(
        activity_log.query(ActivityFilter(activity_type=activity_type, wallet_address=wallet_address))
    )


class TestLogin:
    def test_evm_login(self, auth_service, activity_log, evm_account, sign_evm, clock):
        challenge = auth_service.request_challenge(evm_account.address)
        assert auth_service.wallet_state(evm_account.address) is AuthState.CHALLENGE_ISSUED

        session = auth_service.login(
            evm_account.address,
            sign_evm(evm_account, challenge.message),
            challenge.message,
            user_agent="pytest",
            ip_address="127.0.0.1",
        )

        wallet = evm_account.address.lower()
        assert session.wallet_address == wallet
        assert session.challenge_nonce == challenge.nonce
        assert auth_service.wallet_state(wallet) is AuthState.AUTHENTICATED
        assert auth_service.challenges.current(wallet).consumed

        connects = _events(activity_log, ActivityType.WALLET_CONNECT, wallet)
        assert len(connects) == 1
        assert connects[0].session_id == session.session_id
        assert connects[0].timestamp == session.created_at == clock.now
        assert connects[0].details["chain"] == "evm"

    def test_cardano_login(self, auth_service, activity_log, cardano_wallet):
        challenge = auth_service.request_challenge(cardano_wallet.address)

        session = auth_service.login(
            cardano_wallet.address,
            cardano_wallet.sign(challenge.message),
            challenge.message,
            public_key=cardano_wallet.public_key,
        )

        assert session.wallet_address == cardano_wallet.address
        connects = _events(activity_log, ActivityType.WALLET_CONNECT)
        assert connects[0].details["chain"] == "cardano"

    def test_checksum_and_lower_case_are_the_same_wallet(self, auth_service, evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address.lower())

        session = auth_service.login(
            evm_account.address, sign_evm(evm_account, challenge.message), challenge.message
        )
        assert session.wallet_address == evm_account.address.lower()

    def test_invalid_address(self, auth_service):
        with pytest.raises(InvalidWalletAddress):
            auth_service.request_challenge("not-a-wallet")

    def test_no_challenge(self, auth_service, evm_account, sign_evm):
        with pytest.raises(NoChallenge) as exc_info:
            auth_service.login(evm_account.address, sign_evm(evm_account, "hello"), "hello")
        assert exc_info.value.retry_with_new_challenge

    def test_message_must_be_current_challenge(self, auth_service, evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address)
        forged = challenge.message.replace("Nonce:", "Nonce: 00")

        with pytest.raises(NoChallenge):
            auth_service.login(evm_account.address, sign_evm(evm_account, forged), forged)
        assert not auth_service.challenges.current(evm_account.address.lower()).consumed

    def test_superseded_challenge(self, auth_service, evm_account, sign_evm):
        old = auth_service.request_challenge(evm_account.address)
        new = auth_service.request_challenge(evm_account.address)

        with pytest.raises(NoChallenge):
            auth_service.login(evm_account.address, sign_evm(evm_account, old.message), old.message)

        session = auth_service.login(evm_account.address, sign_evm(evm_account, new.message), new.message)
        assert session.challenge_nonce == new.nonce

    def test_address_mismatch(self, auth_service, activity_log, evm_account, other_evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address)

        with pytest.raises(AddressMismatch) as exc_info:
            auth_service.login(
                evm_account.address, sign_evm(other_evm_account, challenge.message), challenge.message
            )

        wallet = evm_account.address.lower()
        assert not exc_info.value.retry_with_new_challenge
        assert auth_service.challenges.current(wallet).consumed is False
        assert auth_service.sessions.list_active(wallet) == []
        assert _events(activity_log, ActivityType.WALLET_CONNECT) == []

        attempts = _events(activity_log, ActivityType.LOGIN_ATTEMPT, wallet)
        assert len(attempts) == 1
        assert attempts[0].details["outcome"] == "address_mismatch"

    def test_mismatch_leaves_challenge_usable(self, auth_service, evm_account, other_evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address)
        with pytest.raises(AddressMismatch):
            auth_service.login(
                evm_account.address, sign_evm(other_evm_account, challenge.message), challenge.message
            )

        session = auth_service.login(
            evm_account.address, sign_evm(evm_account, challenge.message), challenge.message
        )
        assert session.challenge_nonce == challenge.nonce

    def test_malformed_signature(self, auth_service, activity_log, evm_account):
        challenge = auth_service.request_challenge(evm_account.address)

        with pytest.raises(InvalidSignature):
            auth_service.login(evm_account.address, "0xdeadbeef", challenge.message)

        attempts = _events(activity_log, ActivityType.LOGIN_ATTEMPT)
        assert attempts[0].details["outcome"] == "invalid_signature"

    def test_cardano_signature_needs_key(self, auth_service, cardano_wallet):
        challenge = auth_service.request_challenge(cardano_wallet.address)
        with pytest.raises(InvalidSignature):
            auth_service.login(cardano_wallet.address, cardano_wallet.sign(challenge.message), challenge.message)

    def test_cardano_other_key(self, auth_service, cardano_wallet, other_cardano_wallet):
        challenge = auth_service.request_challenge(cardano_wallet.address)
        with pytest.raises(AddressMismatch):
            auth_service.login(
                cardano_wallet.address,
                other_cardano_wallet.sign(challenge.message),
                challenge.message,
                public_key=other_cardano_wallet.public_key,
            )

    def test_expired_challenge(self, auth_service, activity_log, evm_account, sign_evm, clock):
        challenge = auth_service.request_challenge(evm_account.address)
        signature = sign_evm(evm_account, challenge.message)
        clock.advance(6 * 60)

        assert auth_service.wallet_state(evm_account.address) is AuthState.UNAUTHENTICATED
        with pytest.raises(ExpiredChallenge) as exc_info:
            auth_service.login(evm_account.address, signature, challenge.message)
        assert exc_info.value.retry_with_new_challenge
        assert _events(activity_log, ActivityType.WALLET_CONNECT) == []

    def test_replayed_challenge(self, auth_service, evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address)
        signature = sign_evm(evm_account, challenge.message)

        auth_service.login(evm_account.address, signature, challenge.message)
        with pytest.raises(ReplayedChallenge):
            auth_service.login(evm_account.address, signature, challenge.message)

        wallet = evm_account.address.lower()
        assert len(auth_service.sessions.list_active(wallet)) == 1

    def test_session_write_failure_allows_fresh_login(self, auth_service, activity_log, db, evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address)
        real_commit = db.commit
        commits = []

        def commit_then_fail():
            # consume commits first, the session insert is the second commit
            commits.append(1)
            if len(commits) == 2:
                raise OperationalError("INSERT", {}, Exception("db down"))
            real_commit()

        with patch.object(db, "commit", side_effect=commit_then_fail):
            with pytest.raises(StorageUnavailable):
                auth_service.login(
                    evm_account.address, sign_evm(evm_account, challenge.message), challenge.message
                )

        wallet = evm_account.address.lower()
        assert auth_service.challenges.current(wallet).consumed
        assert db.query(WalletSession).count() == 0
        assert _events(activity_log, ActivityType.WALLET_CONNECT) == []

        fresh = auth_service.request_challenge(evm_account.address)
        session = auth_service.login(evm_account.address, sign_evm(evm_account, fresh.message), fresh.message)
        assert session.challenge_nonce == fresh.nonce
        assert db.query(WalletSession).count() == 1

    def test_activity_failure_does_not_fail_login(self, db, clock, evm_account, sign_evm):
        broken_log = MagicMock(spec=ActivityLog)
        broken_log.append.side_effect = RuntimeError("log exploded")
        service = AuthService(db, broken_log, clock=clock)

        challenge = service.request_challenge(evm_account.address)
        session = service.login(evm_account.address, sign_evm(evm_account, challenge.message), challenge.message)

        assert service.sessions.validate(session.session_id) == session
        broken_log.append.assert_called_once()


class TestLogout:
    def _login(self, auth_service, account, sign_evm) -> AuthSession:
        challenge = auth_service.request_challenge(account.address)
        return auth_service.login(account.address, sign_evm(account, challenge.message), challenge.message)

    def test_logout(self, auth_service, activity_log, evm_account, sign_evm):
        session = self._login(auth_service, evm_account, sign_evm)

        assert auth_service.logout(session.session_id) is True
        with pytest.raises(SessionRevoked):
            auth_service.sessions.validate(session.session_id)
        assert auth_service.wallet_state(evm_account.address) is AuthState.UNAUTHENTICATED

        disconnects = _events(activity_log, ActivityType.WALLET_DISCONNECT)
        assert len(disconnects) == 1
        assert disconnects[0].session_id == session.session_id
        assert disconnects[0].wallet_address == evm_account.address.lower()

    def test_logout_twice(self, auth_service, activity_log, evm_account, sign_evm):
        session = self._login(auth_service, evm_account, sign_evm)

        assert auth_service.logout(session.session_id) is True
        assert auth_service.logout(session.session_id) is False
        assert len(_events(activity_log, ActivityType.WALLET_DISCONNECT)) == 1

    def test_logout_unknown_session(self, auth_service, activity_log):
        assert auth_service.logout("unknown") is False
        assert _events(activity_log, ActivityType.WALLET_DISCONNECT) == []

    def test_other_sessions_survive(self, auth_service, evm_account, sign_evm):
        first = self._login(auth_service, evm_account, sign_evm)
        second = self._login(auth_service, evm_account, sign_evm)

        auth_service.logout(first.session_id)
        assert auth_service.sessions.validate(second.session_id) == second
        assert auth_service.wallet_state(evm_account.address) is AuthState.AUTHENTICATED


    def test_wallet_state_at_given_time(self, auth_service, evm_account, sign_evm, clock):
        session = self._login(auth_service, evm_account, sign_evm)

        assert auth_service.wallet_state(evm_account.address) is AuthState.AUTHENTICATED
        assert auth_service.wallet_state(evm_account.address, now=session.expires_at) is AuthState.UNAUTHENTICATED
        assert clock.now < session.expires_at



class TestRecordActivity:
    def test_usage_event(self, auth_service, activity_log, evm_account, sign_evm):
        challenge = auth_service.request_challenge(evm_account.address)
        session = auth_service.login(
            evm_account.address, sign_evm(evm_account, challenge.message), challenge.message
        )

        entry_id = auth_service.record_activity(
            session, "card_view", target_id="apy-card", details={"pool": "ada-usdm"}
        )

        entry = activity_log.get(entry_id)
        assert entry.activity_type is ActivityType.CARD_VIEW
        assert entry.session_id == session.session_id
        assert entry.wallet_address == session.wallet_address
        assert entry.target_id == "apy-card"

    @pytest.mark.parametrize("activity_type", ["wallet_connect", "login", "bogus"])
    def test_reserved_or_unknown_type(self, auth_service, activity_type):
        session = AuthSession(
            session_id="s", wallet_address="0x" + "11" * 20, challenge_nonce="n", created_at=0, expires_at=1
        )
        with pytest.raises(InvalidActivityType):
            auth_service.record_activity(session, activity_type)


def test_concurrent_logins_create_one_session(tmp_path, evm_account, sign_evm):
    """Racing submissions of one signed challenge: exactly one wins."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=engine)
    Factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    activity_log = ActivityLog(session_factory=Factory)

    setup_db = Factory()
    challenge = AuthService(setup_db, activity_log).request_challenge(evm_account.address)
    setup_db.close()
    signature = sign_evm(evm_account, challenge.message)

    workers = 4
    barrier = threading.Barrier(workers)

    def attempt(_):
        db = Factory()
        try:
            service = AuthService(db, activity_log)
            barrier.wait()
            try:
                return service.login(evm_account.address, signature, challenge.message)
            except ReplayedChallenge as exc:
                return exc
        finally:
            db.close()

    try:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        sessions = [result for result in results if isinstance(result, AuthSession)]
        replays = [result for result in results if isinstance(result, ReplayedChallenge)]
        assert len(sessions) == 1
        assert len(replays) == workers - 1

        check_db = Factory()
        try:
            assert check_db.query(WalletSession).count() == 1
        finally:
            check_db.close()
        assert len(_events(activity_log, ActivityType.WALLET_CONNECT)) == 1
    finally:
        engine.dispose()
