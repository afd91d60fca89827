import unittest
from datetime import datetime, timedelta

import pytz

from campaign_delivery.campaign_scheduler import CampaignScheduler
from campaign_delivery.models.campaign import Campaign, CampaignStatus, EmailBatch
from campaign_delivery.utils.time_utils import format_datetime, is_recurring_due

from tests.fakes import T0, FakeClock, InMemoryStore, RecordingSleep, RecordingTransport, make_settings

BERLIN = pytz.timezone('Europe/Berlin')


def berlin(*args):
    return BERLIN.localize(datetime(*args)).astimezone(pytz.UTC)


class RecurringScheduleTests(unittest.TestCase):
    def test_daily_within_tolerance(self):
        config = {'frequency': 'daily', 'time': '09:00'}
        self.assertTrue(is_recurring_due(config, berlin(2026, 3, 2, 9, 4)))
        self.assertTrue(is_recurring_due(config, berlin(2026, 3, 2, 8, 56)))
        self.assertFalse(is_recurring_due(config, berlin(2026, 3, 2, 9, 6)))

    def test_daily_without_time_runs_any_time(self):
        self.assertTrue(is_recurring_due({'frequency': 'daily'}, berlin(2026, 3, 2, 17, 30)))

    def test_weekly_days_start_at_sunday(self):
        config = {'frequency': 'weekly', 'days': [0, 3], 'time': '10:00'}
        # 2026-03-01 is a Sunday, 2026-03-04 a Wednesday
        self.assertTrue(is_recurring_due(config, berlin(2026, 3, 1, 10, 0)))
        self.assertTrue(is_recurring_due(config, berlin(2026, 3, 4, 10, 2)))
        self.assertFalse(is_recurring_due(config, berlin(2026, 3, 2, 10, 0)))

    def test_monthly_days(self):
        config = {'frequency': 'monthly', 'days': [1, 15], 'time': '07:30'}
        self.assertTrue(is_recurring_due(config, berlin(2026, 4, 15, 7, 30)))
        self.assertFalse(is_recurring_due(config, berlin(2026, 4, 16, 7, 30)))

    def test_date_range(self):
        config = {'frequency': 'daily', 'time': '09:00',
                  'start_date': '2026-03-10T00:00:00Z', 'end_date': '2026-03-20T00:00:00Z'}
        self.assertFalse(is_recurring_due(config, berlin(2026, 3, 5, 9, 0)))
        self.assertTrue(is_recurring_due(config, berlin(2026, 3, 12, 9, 0)))
        self.assertFalse(is_recurring_due(config, berlin(2026, 3, 25, 9, 0)))

    def test_unusable_configs(self):
        now = berlin(2026, 3, 2, 9, 0)
        self.assertFalse(is_recurring_due(None, now))
        self.assertFalse(is_recurring_due({'frequency': 'weekly'}, now))
        self.assertFalse(is_recurring_due({'frequency': 'yearly'}, now))
        self.assertFalse(is_recurring_due({'frequency': 'daily', 'time': 'noon'}, now))


class CampaignSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryStore(clock=self.clock)
        self.transport = RecordingTransport()
        self.store.add_user('u1', 'anna@example.com', name='Anna')
        self.store.add_user('u2', 'ben@example.com', name='Ben')
        self.scheduler = CampaignScheduler(self.store, settings=make_settings(),
                                           transport=self.transport, clock=self.clock,
                                           sleep=RecordingSleep())

    def _campaign(self, **fields):
        fields.setdefault('target_config', {'segment_type': 'all'})
        return self.store.insert_campaign(Campaign(subject='Termine', content='<p>{name}</p>', **fields))

    def test_due_scheduled_campaigns_are_started(self):
        due = self._campaign(status='scheduled', schedule_type='scheduled',
                             scheduled_at=T0 - timedelta(minutes=1))
        later = self._campaign(status='scheduled', schedule_type='scheduled',
                               scheduled_at=T0 + timedelta(hours=1))

        report = self.scheduler.start_due_campaigns()

        self.assertEqual(report.started, [due.id])
        self.assertEqual(self.store.get_campaign(due.id).status, CampaignStatus.ACTIVE)
        self.assertEqual(len(self.store.list_batches(due.id)), 1)
        self.assertEqual(self.store.get_campaign(later.id).status, CampaignStatus.SCHEDULED)

    def test_recurring_campaign_runs_once_per_window(self):
        local = T0.astimezone(BERLIN)
        campaign = self._campaign(status='active', schedule_type='recurring', recurring_config={
            'frequency': 'daily', 'time': local.strftime('%H:%M'),
        })

        first = self.scheduler.start_due_campaigns()
        self.clock.advance(minutes=3)
        second = self.scheduler.start_due_campaigns()

        self.assertEqual(first.recurring, [campaign.id])
        self.assertEqual(second.recurring, [])
        self.assertEqual(len(self.store.list_batches(campaign.id)), 1)

    def test_recurring_campaign_stays_active_after_sending(self):
        local = T0.astimezone(BERLIN)
        campaign = self._campaign(status='active', schedule_type='recurring', recurring_config={
            'frequency': 'daily', 'time': local.strftime('%H:%M'),
        })

        self.scheduler.tick()

        self.assertEqual(len(self.transport.sent), 2)
        self.assertEqual(self.store.get_campaign(campaign.id).status, CampaignStatus.ACTIVE)

        # next day only new users are picked up
        self.store.add_user('u3', 'carla@example.com')
        self.clock.advance(days=1)
        self.scheduler.tick()
        self.assertEqual(self.transport.sent_to()[-1], 'carla@example.com')
        self.assertEqual(len(self.transport.sent), 3)

    def test_process_due_batches_only_touches_due_ones(self):
        campaign = self._campaign(status='active')
        self.store.insert_recipients([{'campaign_id': campaign.id, 'recipient_email': 'x@example.com',
                                       'status': 'pending'}])
        due = self.store.insert_batch(EmailBatch(campaign_id=campaign.id, scheduled_time=T0,
                                                 recipient_count=1))
        future = self.store.insert_batch(EmailBatch(campaign_id=campaign.id, batch_number=2,
                                                    scheduled_time=T0 + timedelta(hours=1)))

        report = self.scheduler.process_due_batches()

        self.assertEqual([r.batch_id for r in report.results], [due.id])
        self.assertEqual(self.store.get_batch(future.id).status.value, 'pending')
        self.assertEqual(self.transport.sent_to(), ['x@example.com'])

    def test_batch_errors_are_collected(self):
        campaign = self._campaign(status='active')
        batch = self.store.insert_batch(EmailBatch(campaign_id=campaign.id, scheduled_time=T0))
        self.store.broken.add('update_batch')

        report = self.scheduler.process_due_batches()

        self.assertEqual(report.results, [])
        self.assertEqual(report.errors[0]['batch_id'], batch.id)

    def test_batches_without_a_campaign_are_not_due(self):
        self.store.insert_batch(EmailBatch(campaign_id='gone', scheduled_time=T0))

        report = self.scheduler.process_due_batches()

        self.assertEqual(report.results, [])
        self.assertEqual(report.errors, [])

    def test_held_campaigns_do_not_crowd_out_active_ones(self):
        held = []
        for i in range(10):
            campaign = self._campaign(status='paused' if i % 2 else 'draft')
            held.append(self.store.insert_batch(EmailBatch(
                campaign_id=campaign.id, scheduled_time=T0 - timedelta(hours=2, minutes=i))))
        live = self._campaign(status='active')
        self.store.insert_recipients([{'campaign_id': live.id, 'recipient_email': 'live@example.com',
                                       'status': 'pending'}])
        live_batch = self.store.insert_batch(EmailBatch(campaign_id=live.id, scheduled_time=T0,
                                                        recipient_count=1))

        report = self.scheduler.process_due_batches(limit=10)

        self.assertEqual([r.batch_id for r in report.results], [live_batch.id])
        self.assertEqual(self.transport.sent_to(), ['live@example.com'])
        for batch in held:
            self.assertEqual(self.store.get_batch(batch.id).status.value, 'pending')

    def test_sweep_fails_recipients_stuck_in_sending(self):
        campaign = self._campaign(status='active')
        self.store.insert_recipients([
            {'campaign_id': campaign.id, 'recipient_email': 'old@example.com', 'status': 'sending',
             'last_attempt_at': format_datetime(T0 - timedelta(hours=2))},
            {'campaign_id': campaign.id, 'recipient_email': 'new@example.com', 'status': 'sending',
             'last_attempt_at': format_datetime(T0 - timedelta(minutes=5))},
        ])

        swept = self.scheduler.sweep_stuck_recipients()

        self.assertEqual(swept, 1)
        old = self.store.recipient_by_email(campaign.id, 'old@example.com')
        self.assertEqual(old.status.value, 'failed')
        self.assertIn('interrupted', old.error_message)
        new = self.store.recipient_by_email(campaign.id, 'new@example.com')
        self.assertEqual(new.status.value, 'sending')
        self.assertEqual(self.transport.attempts, [])


if __name__ == "__main__":
    unittest.main()
