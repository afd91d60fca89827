import unittest

from campaign_delivery.exceptions import InvalidTransition
from campaign_delivery.models.campaign import BatchStatus, CampaignStatus, RecipientStatus
from campaign_delivery.retry_policy import RetryPolicy
from campaign_delivery.state_machine import (
    campaign_action_target,
    final_campaign_status,
    transition_batch,
    transition_campaign,
    transition_recipient,
)


class StateMachineTests(unittest.TestCase):
    def test_campaign_transitions(self):
        self.assertEqual(transition_campaign('draft', 'active'), CampaignStatus.ACTIVE)
        self.assertEqual(transition_campaign(CampaignStatus.PAUSED, CampaignStatus.DRAFT),
                         CampaignStatus.DRAFT)
        for terminal in ('completed', 'partial', 'failed'):
            with self.assertRaises(InvalidTransition):
                transition_campaign(terminal, 'active')
        with self.assertRaises(InvalidTransition):
            transition_campaign('draft', 'paused')

    def test_batch_transitions(self):
        self.assertEqual(transition_batch('pending', 'processing'), BatchStatus.PROCESSING)
        self.assertEqual(transition_batch('processing', 'pending'), BatchStatus.PENDING)
        self.assertEqual(transition_batch('pending', 'failed'), BatchStatus.FAILED)
        with self.assertRaises(InvalidTransition):
            transition_batch('pending', 'completed')
        with self.assertRaises(InvalidTransition):
            transition_batch('completed', 'processing')

    def test_recipient_transitions_are_monotonic(self):
        self.assertEqual(transition_recipient('pending', 'sending'), RecipientStatus.SENDING)
        self.assertEqual(transition_recipient('sending', 'sent'), RecipientStatus.SENT)
        for done in ('sent', 'skipped', 'failed'):
            with self.assertRaises(InvalidTransition):
                transition_recipient(done, 'pending')
        with self.assertRaises(InvalidTransition):
            transition_recipient('pending', 'sent')

    def test_admin_actions(self):
        self.assertEqual(campaign_action_target('start', 'scheduled'), CampaignStatus.ACTIVE)
        self.assertEqual(campaign_action_target('cancel', 'paused'), CampaignStatus.DRAFT)
        with self.assertRaises(InvalidTransition):
            campaign_action_target('resume', 'active')
        with self.assertRaises(InvalidTransition):
            campaign_action_target('schedule', 'paused')

    def test_final_status(self):
        self.assertEqual(final_campaign_status(10, 0), CampaignStatus.COMPLETED)
        self.assertEqual(final_campaign_status(0, 0), CampaignStatus.COMPLETED)
        self.assertEqual(final_campaign_status(9, 1), CampaignStatus.PARTIAL)
        self.assertEqual(final_campaign_status(0, 3), CampaignStatus.FAILED)


class RetryPolicyTests(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def _flaky(self, failures):
        calls = {'n': 0}

        def func():
            calls['n'] += 1
            if calls['n'] <= failures:
                raise ConnectionError(f"attempt {calls['n']} failed")
            return 'ok'
        return func

    def test_succeeds_after_failures(self):
        outcome = RetryPolicy(max_attempts=3, sleep=self.sleeps.append).run(self._flaky(2))
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.result, 'ok')
        self.assertEqual(outcome.failed_attempts, 2)
        self.assertEqual(self.sleeps, [2.0, 4.0])

    def test_gives_up_after_max_attempts(self):
        outcome = RetryPolicy(max_attempts=3, sleep=self.sleeps.append).run(self._flaky(5))
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(outcome.error_message, 'attempt 3 failed')
        self.assertEqual(self.sleeps, [2.0, 4.0])

    def test_invalid_attempts(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)


if __name__ == "__main__":
    unittest.main()
