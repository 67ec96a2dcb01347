"""
Unit Tests: Transaction and Notification State

Coverage:
- ReadyForQuery status bytes
- Savepoint depth bookkeeping
- Heal-on-retry classification
- Warning and notification queues
"""

import pytest

from pgwire_client.exceptions import ServerErrorMessage, StatementError
from pgwire_client.transaction import (
    AutoSave,
    Notification,
    NotificationQueue,
    SavepointTracker,
    ServerWarning,
    TransactionState,
    WarningChain,
    will_heal_on_retry,
    will_heal_via_reparse,
)


def server_error(sqlstate: str, routine: str = None) -> StatementError:
    fields = {'S': 'ERROR', 'C': sqlstate, 'M': 'failure'}
    if routine:
        fields['R'] = routine
    return StatementError(ServerErrorMessage(fields))


@pytest.mark.unit
class TestTransactionState:

    @pytest.mark.parametrize("status,state", [
        (b'I', TransactionState.IDLE),
        (b'T', TransactionState.OPEN),
        (b'E', TransactionState.FAILED),
    ])
    def test_from_status(self, status, state):
        assert TransactionState.from_status(status) is state

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            TransactionState.from_status(b'X')


@pytest.mark.unit
class TestSavepointTracker:

    def test_depth_follows_acknowledgements(self):
        tracker = SavepointTracker(max_savepoints=2)
        tracker.acknowledge('SAVEPOINT')
        assert tracker.depth == 1
        assert not tracker.at_limit
        tracker.acknowledge('SAVEPOINT')
        assert tracker.at_limit
        tracker.acknowledge('RELEASE')
        assert tracker.depth == 1
        tracker.acknowledge('ROLLBACK')
        assert tracker.depth == 1

    def test_release_never_goes_negative(self):
        tracker = SavepointTracker()
        tracker.acknowledge('RELEASE')
        assert tracker.depth == 0

    def test_reset(self):
        tracker = SavepointTracker()
        tracker.acknowledge('SAVEPOINT')
        tracker.reset()
        assert tracker.depth == 0

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            SavepointTracker(max_savepoints=0)


@pytest.mark.unit
class TestHealOnRetry:

    def test_missing_prepared_statement_heals(self):
        assert will_heal_via_reparse(server_error('26000'))

    @pytest.mark.parametrize("routine", ['RevalidateCachedQuery', 'RevalidateCachedPlan'])
    def test_plan_revalidation_heals(self, routine):
        assert will_heal_via_reparse(server_error('0A000', routine))

    def test_other_feature_errors_do_not_heal(self):
        assert not will_heal_via_reparse(server_error('0A000', 'transformSelectStmt'))
        assert not will_heal_via_reparse(server_error('23505'))
        assert not will_heal_via_reparse(ValueError('x'))
        assert not will_heal_via_reparse(None)

    def test_failed_transaction_without_autosave_does_not_heal(self):
        """GIVEN autosave never WHEN the transaction is failed THEN nothing heals"""
        error = server_error('26000')
        assert not will_heal_on_retry(error, AutoSave.NEVER, TransactionState.FAILED)
        assert will_heal_on_retry(error, AutoSave.NEVER, TransactionState.OPEN)
        assert will_heal_on_retry(error, AutoSave.CONSERVATIVE, TransactionState.FAILED)


@pytest.mark.unit
class TestQueues:

    def test_notifications_drain_once(self):
        queue = NotificationQueue()
        queue.add(Notification('jobs', 10, 'a'))
        queue.add(Notification('jobs', 10, 'b'))
        assert [n.payload for n in queue.drain()] == ['a', 'b']
        assert queue.drain() == []

    def test_warning_chain(self):
        chain = WarningChain()
        warning = ServerWarning(ServerErrorMessage({'S': 'WARNING', 'C': '01000', 'M': 'careful'}))
        chain.add(warning)
        assert chain.get() == (warning,)
        assert warning.message == 'careful'
        assert warning.sqlstate == '01000'
        chain.clear()
        assert len(chain) == 0
