"""
Tests for ephemeral grants: scoping, expiry, activation and revocation.
"""
import json
import time
import unittest

from fakes import ACCOUNT, FakeAWS, client_error, fast_config

from ssmxfer.errors import CredentialError, ValidationError
from ssmxfer.models import Direction, GrantState, Instance, StagingObject
from ssmxfer.operations.credentials import (EphemeralCredentialManager, GrantScope,
                                            clamp_ttl)

IID = "i-0123456789abcdef0"


class CredentialTestCase(unittest.TestCase):

    def setUp(self):
        fast_config(self)
        self.aws = FakeAWS()
        self.aws.add_instance(IID)
        self.creds = EphemeralCredentialManager(self.aws.session())
        self.obj = StagingObject(bucket="stage-bucket", key="ssmxfer/uploads/r1/f.bin",
                                 size=10, request_id="r1")
        self.scope = GrantScope.for_object(self.obj, Direction.UPLOAD)


class TestPlan(CredentialTestCase):

    def test_plan_touches_nothing(self):
        grant = self.creds.plan(self.scope, 600, "r1", "app-role")
        self.assertIs(grant.state, GrantState.REQUESTED)
        self.assertEqual(self.aws.iam.policies, {})
        self.assertEqual(grant.resource, "arn:aws:s3:::stage-bucket/ssmxfer/uploads/r1/f.bin")
        self.assertEqual(grant.actions, ["s3:GetObject"])
        self.assertTrue(grant.policy_arn.startswith(f"arn:aws:iam::{ACCOUNT}:policy/ssmxfer/"))
        self.assertAlmostEqual(grant.expires_at - grant.created_at, 600, delta=1)

    def test_each_plan_gets_a_fresh_id(self):
        a = self.creds.plan(self.scope, 600, "r1", "app-role")
        b = self.creds.plan(self.scope, 600, "r1", "app-role")
        self.assertNotEqual(a.grant_id, b.grant_id)
        self.assertNotEqual(a.policy_name, b.policy_name)

    def test_wildcard_scope_rejected(self):
        scope = GrantScope(resource="arn:aws:s3:::stage-bucket/*", actions=("s3:GetObject",))
        with self.assertRaises(ValidationError):
            self.creds.plan(scope, 600, "r1", "app-role")

    def test_download_scope_allows_write_only(self):
        scope = GrantScope.for_object(self.obj, Direction.DOWNLOAD)
        self.assertIn("s3:PutObject", scope.actions)
        self.assertNotIn("s3:GetObject", scope.actions)

    def test_policy_document_expires(self):
        grant = self.creds.plan(self.scope, 600, "r1", "app-role")
        doc = EphemeralCredentialManager.policy_document(grant)
        (statement,) = doc["Statement"]
        self.assertEqual(statement["Effect"], "Allow")
        self.assertEqual(statement["Resource"], [grant.resource])
        stamp = statement["Condition"]["DateLessThan"]["aws:CurrentTime"]
        self.assertEqual(stamp, time.strftime("%Y-%m-%dT%H:%M:%SZ",
                                              time.gmtime(grant.expires_at)))


class TestTTL(unittest.TestCase):

    def setUp(self):
        fast_config(self, GRANT_TTL_MIN=300, GRANT_TTL_MAX=3600)

    def test_default_is_max(self):
        self.assertEqual(clamp_ttl(None), 3600)

    def test_short_ttl_raised_to_min(self):
        self.assertEqual(clamp_ttl(10), 300)

    def test_ttl_above_max_rejected(self):
        with self.assertRaises(ValidationError):
            clamp_ttl(3601)

    def test_in_range_unchanged(self):
        self.assertEqual(clamp_ttl(900), 900)


class TestActivateRevoke(CredentialTestCase):

    def test_role_from_instance_profile(self):
        instance = Instance(IID, iam_profile_arn=f"arn:aws:iam::{ACCOUNT}:instance-profile/app-profile")
        self.assertEqual(self.creds.role_for_instance(instance), "app-role")

    def test_instance_without_profile(self):
        with self.assertRaises(CredentialError):
            self.creds.role_for_instance(Instance(IID))

    def test_issue_attaches_policy(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        self.assertIs(grant.state, GrantState.ACTIVE)
        self.assertIn(grant.policy_arn, self.aws.iam.attachments["app-role"])
        self.assertTrue(self.aws.iam.allows("app-role", "s3:GetObject", self.obj.arn))
        self.assertFalse(self.aws.iam.allows("app-role", "s3:PutObject", self.obj.arn))
        stored = self.aws.iam.policies[grant.policy_arn]
        self.assertEqual(stored["document"],
                         json.loads(json.dumps(self.creds.policy_document(grant))))

    def test_expiry_counts_from_activation(self):
        """A grant planned long before it is issued still gets its full TTL."""
        grant = self.creds.plan(self.scope, 600, "r1", "app-role")
        grant.created_at -= 400
        grant.expires_at -= 400
        before = time.time()
        self.creds.activate(grant)
        self.assertGreaterEqual(grant.expires_at, before + 600)
        self.assertLessEqual(grant.expires_at, time.time() + 600)
        stored = self.aws.iam.policies[grant.policy_arn]["document"]
        self.assertEqual(stored["Statement"][0]["Condition"]["DateLessThan"]["aws:CurrentTime"],
                         time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(grant.expires_at)))

    def test_revoke_removes_everything(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        self.creds.revoke(grant)
        self.assertIs(grant.state, GrantState.REVOKED)
        self.assertEqual(self.aws.iam.policies, {})
        self.assertEqual(self.aws.iam.attachments["app-role"], set())

    def test_revoke_is_idempotent(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        self.creds.revoke(grant)
        calls = len(self.aws.iam.calls)
        self.creds.revoke(grant)
        self.assertEqual(len(self.aws.iam.calls), calls)

    def test_revoke_of_already_deleted_policy(self):
        """A copy of the grant read back from the ledger still revokes cleanly."""
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        stale_copy = type(grant).from_dict(grant.to_dict())
        self.creds.revoke(grant)
        self.creds.revoke(stale_copy)
        self.assertIs(stale_copy.state, GrantState.REVOKED)

    def test_revoke_detaches_foreign_attachments(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        self.aws.iam.attachments.setdefault("other-role", set()).add(grant.policy_arn)
        self.creds.revoke(grant)
        self.assertEqual(self.aws.iam.policies, {})

    def test_revoke_retries_throttling(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        self.aws.iam.fail["delete_policy"] = client_error("Throttling", "DeletePolicy", 400)
        self.creds.revoke(grant)
        self.assertEqual(self.aws.iam.policies, {})
        self.assertEqual(self.aws.iam.calls.count("delete_policy"), 2)

    def test_revoke_failure_keeps_grant_active(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        self.aws.iam.fail["delete_policy"] = client_error("AccessDenied", "DeletePolicy", 403)
        with self.assertRaises(CredentialError):
            self.creds.revoke(grant)
        self.assertIs(grant.state, GrantState.ACTIVE)

    def test_activate_twice_rejected(self):
        grant = self.creds.issue(self.scope, 600, "r1", "app-role")
        with self.assertRaises(CredentialError):
            self.creds.activate(grant)

    def test_illegal_transition(self):
        grant = self.creds.plan(self.scope, 600, "r1", "app-role")
        grant.transition(GrantState.REVOKED)
        with self.assertRaises(CredentialError):
            grant.transition(GrantState.ACTIVE)

    def test_create_failure(self):
        self.aws.iam.fail["create_policy"] = client_error("AccessDenied", "CreatePolicy", 403)
        grant = self.creds.plan(self.scope, 600, "r1", "app-role")
        with self.assertRaises(CredentialError) as ctx:
            self.creds.activate(grant)
        self.assertEqual(ctx.exception.request_id, "r1")
        self.assertIs(grant.state, GrantState.REQUESTED)

    def test_expired(self):
        grant = self.creds.plan(self.scope, 600, "r1", "app-role")
        self.assertFalse(grant.expired())
        self.assertTrue(grant.expired(grant.expires_at))


if __name__ == "__main__":
    unittest.main()
