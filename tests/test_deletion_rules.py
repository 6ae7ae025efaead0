"""
tests/test_deletion_rules.py -- Protection rules around deleting and deactivating users.

Coverage:
  - the super admin can never be deleted, not even by itself
  - nobody can delete their own account
  - only the super admin may delete ADMIN-role users
  - deletion cascades to OTP challenges, setup tokens and security answers
  - the super admin cannot be deactivated; reactivation is allowed
"""

from __future__ import annotations

import pytest

from auth.errors import AuthorizationFailure, NotFound
from auth.models import Role


@pytest.fixture
def root(service):
    return service.ensure_default_admin("admin", "admin@hopefoundation.org", "root-pass-123")


class TestDeleteRules:
    def test_super_admin_cannot_be_deleted_by_other_admin(self, service, root, make_user) -> None:
        other = make_user("ops-admin", role=Role.ADMIN)
        with pytest.raises(AuthorizationFailure, match="Cannot delete the default admin"):
            service.delete_user(root.id, other.username)

    def test_super_admin_cannot_delete_itself(self, service, root) -> None:
        with pytest.raises(AuthorizationFailure, match="Cannot delete the default admin"):
            service.delete_user(root.id, "admin")

    def test_self_delete_forbidden(self, service, root, make_user) -> None:
        op = make_user("olly", role=Role.ADMIN)
        with pytest.raises(AuthorizationFailure, match="You cannot delete your own account"):
            service.delete_user(op.id, "olly")

    def test_plain_admin_cannot_delete_admin(self, service, root, make_user) -> None:
        a = make_user("alpha", role=Role.ADMIN)
        b = make_user("bravo", role=Role.ADMIN)
        with pytest.raises(AuthorizationFailure, match="Only the default admin can delete other admins"):
            service.delete_user(b.id, a.username)

    def test_super_admin_deletes_admin(self, service, root, make_user, store) -> None:
        b = make_user("bravo", role=Role.ADMIN)
        service.delete_user(b.id, "admin")
        assert store.get_by_id(b.id) is None

    def test_plain_admin_deletes_operator(self, service, root, make_user, store) -> None:
        a = make_user("alpha", role=Role.ADMIN)
        op = make_user("olly")
        service.delete_user(op.id, a.username)
        assert store.get_by_id(op.id) is None

    def test_actor_lookup_is_case_insensitive(self, service, root, make_user, store) -> None:
        op = make_user("olly")
        service.delete_user(op.id, "ADMIN")
        assert store.get_by_id(op.id) is None

    def test_missing_target(self, service, root) -> None:
        with pytest.raises(NotFound):
            service.delete_user("no-such-id", "admin")

    def test_cascade_removes_owned_rows(self, service, root, mailer, questions, store, make_service) -> None:
        bob = service.create_user("bob", "bob@example.org", "Bob", Role.OPERATOR)
        service.complete_password_setup(mailer.last_token, "pw-123456", [(questions[0], "a"), (questions[1], "b")])
        otp_service = make_service(otp_enabled=True)
        otp_service.login("bob", "pw-123456")
        service.setup.issue(store.get_by_id(bob.id))

        assert store.list_otp_challenges(bob.id)
        assert store.list_security_answers(bob.id)
        assert store.get_setup_token_for_user(bob.id) is not None

        service.delete_user(bob.id, "admin")

        assert store.get_by_id(bob.id) is None
        assert store.list_otp_challenges(bob.id) == []
        assert store.list_security_answers(bob.id) == []
        assert store.get_setup_token_for_user(bob.id) is None


class TestStatusRules:
    def test_super_admin_cannot_be_deactivated(self, service, root) -> None:
        with pytest.raises(AuthorizationFailure, match="Cannot deactivate the super admin"):
            service.update_user_status(root.id, False)

    def test_super_admin_reactivation_allowed(self, service, root) -> None:
        assert service.update_user_status(root.id, True).is_active is True

    def test_deactivation_revokes_sessions(self, service, make_user) -> None:
        op = make_user("olly")
        updated = service.update_user_status(op.id, False)
        assert updated.is_active is False
        assert updated.token_version == op.token_version + 1

    def test_super_admin_cannot_be_demoted(self, service, root) -> None:
        with pytest.raises(AuthorizationFailure):
            service.update_user(root.id, role=Role.OPERATOR)

    def test_super_admin_cannot_be_deactivated_via_update(self, service, root) -> None:
        with pytest.raises(AuthorizationFailure):
            service.update_user(root.id, active=False)
