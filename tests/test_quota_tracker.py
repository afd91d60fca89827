import unittest
from datetime import timedelta

from campaign_delivery.models.campaign import Campaign
from campaign_delivery.quota_tracker import QuotaTracker
from campaign_delivery.utils.time_utils import format_datetime

from tests.fakes import T0, FakeClock, InMemoryStore, make_settings


class QuotaTrackerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryStore(clock=self.clock)
        self.settings = make_settings(hourly_cap=200)
        self.quota = QuotaTracker(self.store, self.settings, clock=self.clock)

    def _sent(self, count, minutes_ago=10):
        sent_at = format_datetime(T0 - timedelta(minutes=minutes_ago))
        self.store.insert_recipients([
            {'campaign_id': 'c-sent', 'recipient_email': f"s{minutes_ago}-{i}@example.com",
             'status': 'sent', 'sent_at': sent_at}
            for i in range(count)
        ])

    def test_partial_capacity_left(self):
        self._sent(150)

        check = self.quota.check_quota(100)

        self.assertFalse(check.can_send_now)
        self.assertEqual(check.remaining, 50)
        self.assertEqual(check.used, 150)

    def test_request_within_capacity(self):
        self._sent(150)
        check = self.quota.check_quota(50)
        self.assertTrue(check.can_send_now)

    def test_exhausted_window(self):
        self._sent(200)
        check = self.quota.check_quota(1)
        self.assertFalse(check.can_send_now)
        self.assertEqual(check.remaining, 0)

    def test_over_cap_never_goes_negative(self):
        self._sent(230)
        self.assertEqual(self.quota.check_quota(1).remaining, 0)

    def test_sends_outside_the_window_do_not_count(self):
        self._sent(200, minutes_ago=61)
        self._sent(20, minutes_ago=5)
        check = self.quota.check_quota(100)
        self.assertEqual(check.used, 20)
        self.assertEqual(check.remaining, 180)

    def test_reset_time_is_end_of_trailing_window(self):
        self.assertEqual(self.quota.check_quota(1).window_reset_at, T0)

    def test_store_error_fails_open(self):
        self.store.broken.add('count_sent_since')
        check = self.quota.check_quota(10)
        self.assertTrue(check.can_send_now)
        self.assertEqual(check.remaining, 200)

    def test_quota_status(self):
        self._sent(40)
        status = self.quota.get_quota_status().to_dict()
        self.assertEqual(status['remaining'], 160)
        self.assertEqual(status['used'], 40)
        self.assertEqual(status['max_per_hour'], 200)
        self.assertEqual(status['batch_size'], 200)
        self.assertEqual(status['window_size_seconds'], 3600)

    def test_user_campaign_limit(self):
        settings = make_settings(max_campaigns_per_user_window=2)
        quota = QuotaTracker(self.store, settings, clock=self.clock)
        for _ in range(2):
            self.assertTrue(quota.check_user_quota('admin-1'))
            self.store.insert_campaign(Campaign(subject='s', content='c', sent_by='admin-1'))
        self.assertFalse(quota.check_user_quota('admin-1'))
        self.assertTrue(quota.check_user_quota('admin-2'))

    def test_user_limit_fails_open(self):
        self.store.broken.add('count_campaigns_by_user_since')
        self.assertTrue(self.quota.check_user_quota('admin-1'))


if __name__ == "__main__":
    unittest.main()
