import unittest
from datetime import timedelta

from campaign_delivery.batch_scheduler import BatchScheduler
from campaign_delivery.delivery_worker import DeliveryWorker
from campaign_delivery.models.campaign import Campaign, CampaignStatus, EmailBatch

from tests.fakes import T0, FakeClock, InMemoryStore, RecordingSleep, RecordingTransport, make_settings


class BatchSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryStore(clock=self.clock)
        self.settings = make_settings(batch_size=200, batch_interval_seconds=3600)
        self.scheduler = BatchScheduler(self.store, self.settings, clock=self.clock)
        self.campaign = self.store.insert_campaign(Campaign(
            subject='Sommerfest', content='<p>Hallo {name}</p>', status=CampaignStatus.ACTIVE,
        ))

    def test_total_batches_is_ceiling_of_batch_size(self):
        self.assertEqual(self.scheduler.total_batches_for(0), 0)
        self.assertEqual(self.scheduler.total_batches_for(200), 1)
        self.assertEqual(self.scheduler.total_batches_for(201), 2)
        self.assertEqual(self.scheduler.total_batches_for(450), 3)

    def test_small_campaign_still_gets_one_batch(self):
        plan = self.scheduler.schedule_batches(self.campaign.id, 0)
        self.assertEqual(plan.total_batches, 1)
        self.assertEqual(plan.estimated_completion_time, plan.scheduled_time)

        batch = self.scheduler.create_immediate_batch(self.campaign.id, 1)
        self.assertEqual(batch.batch_number, 2)
        self.assertEqual(batch.total_batches, 2)

    def test_first_batch_is_one_interval_out(self):
        plan = self.scheduler.schedule_batches(self.campaign.id, 450)

        self.assertEqual(plan.total_batches, 3)
        self.assertEqual(plan.batch_number, 1)
        self.assertEqual(plan.scheduled_time, T0 + timedelta(hours=1))
        self.assertEqual(plan.estimated_completion_time, T0 + timedelta(hours=3))

        batches = self.store.list_batches(self.campaign.id)
        self.assertEqual(len(batches), 1)
        self.assertEqual(batches[0].recipient_count, 200)
        stored = self.store.get_campaign(self.campaign.id)
        self.assertEqual(stored.total_batches, 3)
        self.assertEqual(stored.estimated_completion_time, T0 + timedelta(hours=3))

    def test_new_batches_chain_after_existing_ones(self):
        self.store.insert_batch(EmailBatch(
            campaign_id=self.campaign.id, batch_number=4, total_batches=4,
            scheduled_time=T0 + timedelta(hours=3),
        ))

        plan = self.scheduler.schedule_batches(self.campaign.id, 100)

        self.assertEqual(plan.batch_number, 5)
        self.assertEqual(plan.scheduled_time, T0 + timedelta(hours=4))

    def test_past_batches_do_not_pull_the_slot_backwards(self):
        self.store.insert_batch(EmailBatch(
            campaign_id=self.campaign.id, batch_number=1, total_batches=1,
            scheduled_time=T0 - timedelta(days=1), status='completed',
        ))

        plan = self.scheduler.schedule_batches(self.campaign.id, 10)

        self.assertEqual(plan.scheduled_time, T0 + timedelta(hours=1))
        self.assertEqual(plan.batch_number, 2)

    def test_immediate_batch_is_due_now(self):
        batch = self.scheduler.create_immediate_batch(self.campaign.id, 50)
        self.assertEqual(batch.scheduled_time, T0)
        self.assertEqual(batch.batch_number, 1)
        self.assertEqual(batch.recipient_count, 50)
        self.assertEqual(batch.status.value, 'pending')

    def test_450_recipients_go_out_in_three_hourly_batches(self):
        settings = make_settings(batch_size=200, batch_interval_seconds=3600, hourly_cap=10000)
        scheduler = BatchScheduler(self.store, settings, clock=self.clock)
        self.store.insert_recipients([
            {'campaign_id': self.campaign.id, 'recipient_email': f"user{i}@example.com",
             'status': 'pending'}
            for i in range(450)
        ])
        transport = RecordingTransport()
        worker = DeliveryWorker(self.store, settings=settings, transport=transport,
                                clock=self.clock, sleep=RecordingSleep())

        scheduler.schedule_batches(self.campaign.id, 450)
        for _ in range(3):
            batch = [b for b in self.store.list_batches(self.campaign.id)
                     if b.status.value == 'pending'][0]
            self.clock.set(batch.scheduled_time)
            worker.process_batch(batch.id, max_to_send=200)

        batches = self.store.list_batches(self.campaign.id)
        self.assertEqual([b.batch_number for b in batches], [1, 2, 3])
        self.assertEqual([b.total_batches for b in batches], [3, 3, 3])
        self.assertEqual([b.sent_count for b in batches], [200, 200, 50])
        self.assertTrue(all(b.status.value == 'completed' for b in batches))
        self.assertEqual(batches[1].scheduled_time - batches[0].scheduled_time, timedelta(hours=1))
        self.assertEqual(batches[2].scheduled_time - batches[1].scheduled_time, timedelta(hours=1))
        self.assertEqual(len(transport.sent), 450)
        self.assertEqual(self.store.get_campaign(self.campaign.id).status, CampaignStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
