from __future__ import annotations

import unittest

from sqlalchemy.exc import IntegrityError

from app.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.models import Approval, ChangeStatus, PrincipalRole, RequestKind, TrailAction
from app.services import approval_trail_service, ledger_service
from app.services.request_number_service import is_request_number_taken
from tests.support import add_principal, make_session_factory


class LedgerServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.engineer = add_principal(self.db, 'engineer', PrincipalRole.ENGINEER)
        self.admin = add_principal(self.db, 'admin', PrincipalRole.ADMINISTRATOR)

    def tearDown(self) -> None:
        self.db.close()

    def _entry(self, request_number: str = 'HW-202401-0512', **kwargs):
        values = {
            'request_number': request_number,
            'kind': RequestKind.HARDWARE,
            'requested_by_id': self.engineer.id,
            'purpose': 'Replace workstation',
            'ship_id': 7,
        }
        values.update(kwargs)
        return ledger_service.create_or_get_entry(self.db, **values)

    def test_create_starts_in_draft_and_reserves_number(self) -> None:
        entry = self._entry()

        self.assertEqual(entry.status, ChangeStatus.DRAFT)
        self.assertTrue(is_request_number_taken(self.db, 'HW-202401-0512'))

    def test_create_is_idempotent(self) -> None:
        first = self._entry(purpose='Original purpose')
        second = self._entry(purpose='Different purpose')

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.purpose, 'Original purpose')

    def test_create_requires_purpose(self) -> None:
        with self.assertRaises(ValidationError):
            self._entry(purpose='   ')

    def test_set_status_follows_state_machine(self) -> None:
        self._entry()

        entry = ledger_service.set_status(self.db, request_number='HW-202401-0512', new_status=ChangeStatus.SUBMITTED)
        entry = ledger_service.set_status(self.db, request_number='HW-202401-0512', new_status=ChangeStatus.UNDER_REVIEW)
        entry = ledger_service.set_status(self.db, request_number='HW-202401-0512', new_status=ChangeStatus.APPROVED)
        entry = ledger_service.set_status(self.db, request_number='HW-202401-0512', new_status=ChangeStatus.COMPLETED)

        self.assertEqual(entry.status, ChangeStatus.COMPLETED)

    def test_illegal_transition_leaves_status_unchanged(self) -> None:
        self._entry()

        with self.assertRaises(InvalidTransitionError) as ctx:
            ledger_service.set_status(self.db, request_number='HW-202401-0512', new_status=ChangeStatus.APPROVED)

        self.assertIn('HW-202401-0512', str(ctx.exception))
        self.assertEqual(ledger_service.find_by_request_number(self.db, 'HW-202401-0512').status, ChangeStatus.DRAFT)

    def test_terminal_statuses_have_no_successors(self) -> None:
        for status in ledger_service.TERMINAL_STATUSES:
            for target in ChangeStatus:
                self.assertFalse(ledger_service.is_legal_transition(status, target))

    def test_set_status_on_unknown_number(self) -> None:
        with self.assertRaises(NotFoundError):
            ledger_service.set_status(self.db, request_number='HW-202401-9999', new_status=ChangeStatus.SUBMITTED)

    def test_find_is_case_sensitive(self) -> None:
        self._entry()

        self.assertIsNone(ledger_service.find_by_request_number(self.db, 'hw-202401-0512'))

    def test_force_status_bypasses_state_machine(self) -> None:
        self._entry()

        entry = ledger_service.force_status(
            self.db, request_number='HW-202401-0512', new_status=ChangeStatus.APPROVED, reason='test repair'
        )

        self.assertEqual(entry.status, ChangeStatus.APPROVED)

    def test_list_entries_for_user_filters_non_administrators(self) -> None:
        self._entry('HW-202401-0512')
        self._entry('SW-202401-0513', kind=RequestKind.SOFTWARE, requested_by_id=self.admin.id)

        own = ledger_service.list_entries_for_user(self.db, user_id=self.engineer.id, is_administrator=False)
        every = ledger_service.list_entries_for_user(self.db, user_id=self.admin.id, is_administrator=True)

        self.assertEqual([entry.request_number for entry in own], ['HW-202401-0512'])
        self.assertEqual(len(every), 2)

    def test_list_by_ship_and_status(self) -> None:
        self._entry('HW-202401-0512', ship_id=7)
        self._entry('HW-202401-0513', ship_id=8)
        ledger_service.set_status(self.db, request_number='HW-202401-0513', new_status=ChangeStatus.SUBMITTED)

        self.assertEqual([e.request_number for e in ledger_service.list_by_ship(self.db, ship_id=7)], ['HW-202401-0512'])
        self.assertEqual(
            [e.request_number for e in ledger_service.list_by_status(self.db, status=ChangeStatus.SUBMITTED)],
            ['HW-202401-0513'],
        )

    def test_pending_approvals_skip_entries_already_acted_on(self) -> None:
        acted = self._entry('HW-202401-0512')
        waiting = self._entry('HW-202401-0513')
        self._entry('HW-202401-0514')
        for entry in (acted, waiting):
            ledger_service.set_status(self.db, request_number=entry.request_number, new_status=ChangeStatus.SUBMITTED)
        approval_trail_service.append(
            self.db, change_request_id=acted.id, action=TrailAction.SUBMIT, actor_id=self.admin.id
        )

        pending = ledger_service.list_pending_approvals(self.db, user_id=self.admin.id)

        self.assertEqual([entry.request_number for entry in pending], ['HW-202401-0513'])


class ApprovalTrailServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.engineer = add_principal(self.db, 'engineer', PrincipalRole.ENGINEER)
        self.entry = ledger_service.create_or_get_entry(
            self.db,
            request_number='HW-202401-0512',
            kind=RequestKind.HARDWARE,
            requested_by_id=self.engineer.id,
            purpose='Replace workstation',
        )

    def tearDown(self) -> None:
        self.db.close()

    def test_stages_are_contiguous_from_one(self) -> None:
        for action in (TrailAction.SUBMIT, TrailAction.APPROVE, TrailAction.IMPLEMENT):
            approval_trail_service.append(
                self.db, change_request_id=self.entry.id, action=action, actor_id=self.engineer.id
            )

        history = approval_trail_service.history(self.db, self.entry.id)

        self.assertEqual([row.stage for row in history], [1, 2, 3])
        self.assertEqual(approval_trail_service.latest_action(self.db, self.entry.id).action, TrailAction.IMPLEMENT)

    def test_reject_requires_comment(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            approval_trail_service.append(
                self.db, change_request_id=self.entry.id, action=TrailAction.REJECT, actor_id=self.engineer.id, comment='  '
            )

        self.assertIn('HW-202401-0512', str(ctx.exception))
        self.assertFalse(approval_trail_service.has_entries(self.db, self.entry.id))

    def test_empty_history(self) -> None:
        self.assertEqual(approval_trail_service.history(self.db, self.entry.id), [])
        self.assertIsNone(approval_trail_service.latest_action(self.db, self.entry.id))

    def test_duplicate_stage_is_refused_by_database(self) -> None:
        first = approval_trail_service.append(
            self.db, change_request_id=self.entry.id, action=TrailAction.APPROVE, actor_id=self.engineer.id
        )

        with self.assertRaises(IntegrityError):
            with self.db.begin_nested():
                self.db.add(
                    Approval(
                        change_request_id=self.entry.id,
                        stage=first.stage,
                        action=TrailAction.APPROVE,
                        action_by_id=self.engineer.id,
                    )
                )
                self.db.flush()

        self.assertEqual(len(approval_trail_service.history(self.db, self.entry.id)), 1)


if __name__ == '__main__':
    unittest.main()
