from datetime import timedelta

from transfer_orchestrator.schemas import ChatMessage, MandateStatus, PendingTransaction
from tests.conftest import make_account

def pending_for(transfer_args, clock):
    return PendingTransaction(arguments=transfer_args, created_at=clock(), expires_at=clock() + timedelta(seconds=300))

def test_session_is_created_once(db):
    first = db.get_or_create_session("user-1", phone_number="08030000000")
    second = db.get_or_create_session("user-1")
    assert first.version == second.version == 0
    assert second.phone_number == "08030000000"

def test_saving_history_leaves_pending_alone(db, transfer_args, clock):
    session = db.get_or_create_session("user-1")
    stale = db.get_or_create_session("user-1")
    assert db.compare_and_set_pending(session, pending_for(transfer_args, clock))

    stale.history.append(ChatMessage(role="user", content="hello"))
    db.save_history(stale, max_messages=40)

    stored = db.get_or_create_session("user-1")
    assert stored.pending_transaction is not None
    assert stored.version == 1
    assert [message.content for message in stored.history] == ["hello"]

def test_compare_and_set_rejects_stale_version(db, transfer_args, clock):
    first = db.get_or_create_session("user-1")
    second = db.get_or_create_session("user-1")

    assert db.compare_and_set_pending(first, pending_for(transfer_args, clock)) is True
    assert db.compare_and_set_pending(second, None) is False
    assert second.version == 0
    assert db.get_or_create_session("user-1").pending_transaction is not None

def test_idle_session_comes_back_empty(db, transfer_args, clock):
    session = db.get_or_create_session("user-1")
    db.compare_and_set_pending(session, pending_for(transfer_args, clock))
    session.history.append(ChatMessage(role="user", content="hello"))
    db.save_history(session, max_messages=40)

    clock.advance(86401)
    fresh = db.get_or_create_session("user-1", ttl_seconds=86400)

    assert fresh.history == []
    assert fresh.pending_transaction is None
    assert db.compare_and_set_pending(fresh, None) is True

def test_cleanup_expired_sessions(db, clock):
    db.get_or_create_session("old-user")
    clock.advance(7200)
    db.get_or_create_session("new-user")

    assert db.cleanup_expired_sessions(ttl_seconds=3600) == 1
    assert db.health_check()["total_sessions"] == 1

def test_primary_account_is_active_account(db, clock):
    make_account(db, provider_account_id="acc_primary", is_primary=True)
    clock.advance(60)
    make_account(db, provider_account_id="acc_newer", is_primary=False)

    assert db.get_active_account("user-1").provider_account_id == "acc_primary"
    assert [account.provider_account_id for account in db.list_accounts("user-1")] == ["acc_primary", "acc_newer"]
    assert db.get_active_account("someone-else") is None

def test_mandate_url_only_kept_while_pending(db):
    account = make_account(db, mandate_status=MandateStatus.ABSENT, mandate_id=None)

    db.update_mandate(account.id, MandateStatus.PENDING, reference="auth-1", authorization_url="https://auth.test/1")
    assert db.find_account_by_mandate(reference="auth-1").mandate_url == "https://auth.test/1"

    db.update_mandate(account.id, MandateStatus.ACTIVE, mandate_id="mmc_1")
    stored = db.find_account_by_mandate(mandate_id="mmc_1")
    assert stored.mandate_status == MandateStatus.ACTIVE
    assert stored.mandate_reference == "auth-1"
    assert stored.mandate_url is None
