from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from app.config import settings
from app.db import get_db
from app.main import app
from app.models import PrincipalRole, WebSession
from tests.support import add_principal, make_session_factory

HARDWARE_PAYLOAD = {
    'request_number': 'HW-202401-0512',
    'common': {'ship_id': 7, 'department': 'Engine', 'reason': 'Replace failing workstation'},
    'fields': {'before_hw_name': 'ECDIS-1', 'after_hw_name': 'ECDIS-2', 'work_description': 'Swap workstation'},
}


class ChangeRequestRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            engineer = add_principal(db, 'engineer', PrincipalRole.ENGINEER)
            admin = add_principal(db, 'admin', PrincipalRole.ADMINISTRATOR)
            expires = datetime.now(tz=timezone.utc) + timedelta(hours=1)
            for principal, token in ((engineer, 'engineer-token'), (admin, 'admin-token')):
                db.add(WebSession(session_token=token, principal_id=principal.id, expires_at=expires))
            db.commit()

        def override_get_db():
            with self.session_factory() as db:
                yield db

        app.dependency_overrides[get_db] = override_get_db
        self.session_patch = patch('app.security.sessions.SessionLocal', self.session_factory)
        self.session_patch.start()

        self.engineer = TestClient(app, cookies={settings.session_cookie_name: 'engineer-token'})
        self.admin = TestClient(app, cookies={settings.session_cookie_name: 'admin-token'})
        self.anonymous = TestClient(app)

    def tearDown(self) -> None:
        self.session_patch.stop()
        app.dependency_overrides.clear()

    def test_health_is_public_and_api_requires_session(self) -> None:
        self.assertEqual(self.anonymous.get('/health').status_code, 200)
        self.assertEqual(self.anonymous.get('/change-requests').status_code, 401)

    def test_full_hardware_lifecycle(self) -> None:
        created = self.engineer.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD)
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(created.json()['ledger']['status'], 'DRAFT')

        submitted = self.engineer.post('/change-requests/HW-202401-0512/submit')
        self.assertEqual(submitted.status_code, 200, submitted.text)
        self.assertEqual(submitted.json()['form']['state'], 'PENDING')

        pending = self.admin.get('/change-requests/pending')
        self.assertEqual([row['request_number'] for row in pending.json()], ['HW-202401-0512'])

        approved = self.admin.post('/change-requests/HW-202401-0512/approve', json={'comment': 'Looks good'})
        self.assertEqual(approved.status_code, 200, approved.text)
        self.assertEqual(approved.json()['ledger']['status'], 'APPROVED')

        implemented = self.engineer.post('/change-requests/HW-202401-0512/implement')
        self.assertEqual(implemented.status_code, 200, implemented.text)
        self.assertEqual(implemented.json()['ledger']['status'], 'COMPLETED')

        history = self.engineer.get('/change-requests/HW-202401-0512/history').json()
        self.assertEqual([row['stage'] for row in history], [1, 2, 3])
        self.assertEqual([row['action'] for row in history], ['SUBMIT', 'APPROVE', 'IMPLEMENT'])

    def test_errors_carry_request_number_and_action(self) -> None:
        self.engineer.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD)

        premature = self.admin.post('/change-requests/HW-202401-0512/approve')
        self.assertEqual(premature.status_code, 409)
        self.assertEqual(premature.json()['request_number'], 'HW-202401-0512')
        self.assertEqual(premature.json()['action'], 'approve')

        self.engineer.post('/change-requests/HW-202401-0512/submit')
        forbidden = self.engineer.post('/change-requests/HW-202401-0512/approve')
        self.assertEqual(forbidden.status_code, 403)

        no_reason = self.admin.post('/change-requests/HW-202401-0512/reject', json={'comment': ' '})
        self.assertEqual(no_reason.status_code, 422)
        self.assertIn('comment', no_reason.json()['error'])

        missing = self.admin.post('/change-requests/HW-202401-9999/submit')
        self.assertEqual(missing.status_code, 404)

    def test_duplicate_request_number_is_refused(self) -> None:
        self.assertEqual(self.engineer.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD).status_code, 201)

        again = self.engineer.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD)

        self.assertEqual(again.status_code, 422)

    def test_invalid_field_payload_is_refused(self) -> None:
        payload = {'fields': {'review_date': 'not-a-date'}}

        response = self.engineer.post('/change-requests/forms/security-review', json=payload)

        self.assertEqual(response.status_code, 422)
        self.assertIn('review_date', response.json()['error'])

    def test_unknown_kind(self) -> None:
        self.assertEqual(self.engineer.get('/change-requests/forms/firmware').status_code, 404)

    def test_edit_list_and_delete_draft(self) -> None:
        form_id = self.engineer.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD).json()['form']['id']
        edited_payload = dict(HARDWARE_PAYLOAD, fields={'after_hw_name': 'ECDIS-3'})

        edited = self.engineer.put(f'/change-requests/forms/hardware/{form_id}', json=edited_payload)
        self.assertEqual(edited.status_code, 200, edited.text)
        self.assertEqual(edited.json()['after_hw_name'], 'ECDIS-3')

        listed = self.engineer.get('/change-requests/forms/hardware').json()
        self.assertEqual([row['id'] for row in listed], [form_id])

        deleted = self.engineer.delete(f'/change-requests/forms/hardware/{form_id}')
        self.assertEqual(deleted.json(), {'deleted': 'HW-202401-0512'})
        self.assertEqual(self.engineer.get('/change-requests').json(), [])

    def test_list_filters_by_ship_and_status(self) -> None:
        self.engineer.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD)
        self.engineer.post('/change-requests/HW-202401-0512/submit')

        def numbers(client, query):
            response = client.get(f'/change-requests{query}')
            self.assertEqual(response.status_code, 200, response.text)
            return [row['request_number'] for row in response.json()]

        self.assertEqual(numbers(self.admin, '?ship_id=7'), ['HW-202401-0512'])
        self.assertEqual(numbers(self.admin, '?ship_id=8'), [])
        self.assertEqual(numbers(self.admin, '?status=SUBMITTED'), ['HW-202401-0512'])
        self.assertEqual(numbers(self.admin, '?status=DRAFT'), [])
        self.assertEqual(numbers(self.admin, '?ship_id=7&status=APPROVED'), [])
        self.assertEqual(numbers(self.engineer, '?ship_id=7&status=SUBMITTED'), ['HW-202401-0512'])
        self.assertEqual(self.admin.get('/change-requests?status=UNKNOWN').status_code, 422)

    def test_list_hides_other_requesters_entries(self) -> None:
        self.admin.post('/change-requests/forms/hardware', json=HARDWARE_PAYLOAD)

        self.assertEqual(self.engineer.get('/change-requests?ship_id=7').json(), [])
        self.assertEqual(self.engineer.get('/change-requests?status=DRAFT').json(), [])
        self.assertEqual(len(self.admin.get('/change-requests?status=DRAFT').json()), 1)

    def test_reconciliation_is_administrator_only(self) -> None:
        self.assertEqual(self.engineer.get('/management/reconciliation').status_code, 403)

        report = self.admin.get('/management/reconciliation')
        self.assertEqual(report.status_code, 200)
        self.assertEqual(report.json()['count'], 0)

        repaired = self.admin.post('/management/reconciliation/repair')
        self.assertEqual(repaired.json(), {'repaired': [], 'remaining': []})


if __name__ == '__main__':
    unittest.main()
