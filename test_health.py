import os
os.environ['DATABASE_URL'] = 'sqlite://'

import unittest
from datetime import date, timedelta
from app import app, db, House, Flock, HealthRecord, InventoryItem, InventoryTransaction

class HealthTestCase(unittest.TestCase):
    def setUp(self):
        app.config['TESTING'] = True
        self.app = app.test_client()
        self.ctx = app.app_context()
        self.ctx.push()
        db.create_all()

        h = House(name='H1')
        db.session.add(h)
        db.session.commit()

        f = Flock(house_id=h.id, batch_id='B1', name='Layers A', start_date=date(2024, 1, 1), initial_count=100, current_count=100)
        vaccine = InventoryItem(name='ND Vaccine', category='Medicine', unit='vials', current_stock=5)
        db.session.add_all([f, vaccine])
        db.session.commit()
        self.flock_id = f.id
        self.vaccine_id = vaccine.id

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def stock(self):
        return db.session.get(InventoryItem, self.vaccine_id).current_stock

    def test_add_resolved_record_deducts_stock(self):
        response = self.app.post('/health/records', data={
            'flock_id': self.flock_id, 'record_type': 'TREATMENT', 'title': 'Coryza',
            'inventory_item_id': self.vaccine_id, 'quantity_used': '2', 'date': '2024-03-01',
        }, follow_redirects=True)
        self.assertIn(b'Health record saved.', response.data)

        record = HealthRecord.query.one()
        self.assertEqual(record.status, 'RESOLVED')
        self.assertEqual(self.stock(), 3)
        tx = InventoryTransaction.query.one()
        self.assertEqual(tx.transaction_type, 'Usage')
        self.assertEqual(tx.transaction_date, date(2024, 3, 1))

    def test_stock_floors_at_zero(self):
        self.app.post('/health/records', data={
            'flock_id': self.flock_id, 'record_type': 'TREATMENT', 'title': 'Coryza',
            'inventory_item_id': self.vaccine_id, 'quantity_used': '9',
        })
        self.assertEqual(self.stock(), 0)

        # Only the 5 vials on hand are booked out, so undoing restores them exactly
        tx = InventoryTransaction.query.one()
        self.assertEqual(tx.quantity, 5)
        self.app.post(f'/inventory/transaction/delete/{tx.id}')
        self.assertEqual(self.stock(), 5)

    def test_empty_store_books_nothing(self):
        db.session.get(InventoryItem, self.vaccine_id).current_stock = 0
        db.session.commit()
        self.app.post('/health/records', data={
            'flock_id': self.flock_id, 'record_type': 'TREATMENT', 'title': 'Coryza',
            'inventory_item_id': self.vaccine_id, 'quantity_used': '2',
        })
        self.assertEqual(self.stock(), 0)
        self.assertEqual(InventoryTransaction.query.count(), 0)

    def test_complete_only_for_vaccinations(self):
        record = HealthRecord(flock_id=self.flock_id, record_type='TREATMENT', title='Coryza', status='OPEN',
                              inventory_item_id=self.vaccine_id, quantity_used=1)
        db.session.add(record)
        db.session.commit()

        response = self.app.post(f'/health/records/{record.id}/complete', follow_redirects=True)
        self.assertIn(b'is not a vaccination', response.data)
        self.assertEqual(db.session.get(HealthRecord, record.id).status, 'OPEN')
        self.assertEqual(self.stock(), 5)

    def test_edit_keeps_fields_not_submitted(self):
        record = HealthRecord(flock_id=self.flock_id, record_type='TREATMENT', title='Coryza', status='OPEN',
                              description='Swollen faces in pen 2', dosage='1ml/L', outcome='Improving')
        db.session.add(record)
        db.session.commit()

        self.app.post(f'/health/records/{record.id}/edit', data={'title': 'Coryza (pen 2)', 'outcome': ''})
        record = db.session.get(HealthRecord, record.id)
        self.assertEqual(record.title, 'Coryza (pen 2)')
        self.assertEqual(record.flock_id, self.flock_id)
        self.assertEqual(record.description, 'Swollen faces in pen 2')
        self.assertEqual(record.dosage, '1ml/L')
        self.assertIsNone(record.outcome)
        self.assertEqual(record.status, 'OPEN')

    def test_invalid_record_rejected(self):
        response = self.app.post('/health/records', data={'flock_id': self.flock_id, 'record_type': 'SURGERY', 'title': 'x'},
                                 follow_redirects=True)
        self.assertIn(b'Unknown record type', response.data)
        response = self.app.post('/health/records', data={'flock_id': 999, 'record_type': 'CHECKUP', 'title': 'x'},
                                 follow_redirects=True)
        self.assertIn(b'Unknown flock', response.data)
        self.assertEqual(HealthRecord.query.count(), 0)

    def test_schedule_defaults(self):
        self.app.post('/health/schedule', data={'flock_id': self.flock_id, 'title': 'Gumboro',
                                                'inventory_item_id': self.vaccine_id, 'quantity_used': '1'})
        record = HealthRecord.query.one()
        self.assertEqual(record.record_type, 'VACCINATION')
        self.assertEqual(record.status, 'OPEN')
        self.assertEqual(record.date, date.today() + timedelta(days=1))
        # Nothing leaves the store until the vaccination is done
        self.assertEqual(self.stock(), 5)

    def test_complete_deducts_once(self):
        self.app.post('/health/schedule', data={'flock_id': self.flock_id, 'title': 'Gumboro', 'date': '2024-04-10',
                                                'inventory_item_id': self.vaccine_id, 'quantity_used': '1'})
        record = HealthRecord.query.one()

        self.app.post(f'/health/records/{record.id}/complete', data={'date': '2024-04-11'})
        record = db.session.get(HealthRecord, record.id)
        self.assertEqual(record.status, 'RESOLVED')
        self.assertEqual(record.date, date(2024, 4, 11))
        self.assertEqual(self.stock(), 4)

        # Completing or editing a resolved record again leaves stock alone
        self.app.post(f'/health/records/{record.id}/complete')
        self.app.post(f'/health/records/{record.id}/edit', data={
            'flock_id': self.flock_id, 'title': 'Gumboro', 'record_type': 'VACCINATION', 'status': 'RESOLVED',
            'inventory_item_id': self.vaccine_id, 'quantity_used': '1',
        })
        self.assertEqual(self.stock(), 4)
        self.assertEqual(InventoryTransaction.query.count(), 1)

    def test_listing(self):
        today = date.today()
        db.session.add_all([
            HealthRecord(flock_id=self.flock_id, date=today + timedelta(days=7), record_type='VACCINATION', title='Pox', status='OPEN'),
            HealthRecord(flock_id=self.flock_id, date=today + timedelta(days=2), record_type='VACCINATION', title='IB', status='OPEN'),
            HealthRecord(flock_id=self.flock_id, date=today - timedelta(days=20), record_type='VACCINATION', title='ND', status='RESOLVED'),
            HealthRecord(flock_id=self.flock_id, date=today - timedelta(days=1), record_type='ISOLATION', title='Limping', birds_affected=3),
        ])
        db.session.commit()

        data = self.app.get('/health').get_json()
        self.assertEqual([r['title'] for r in data['records']], ['Pox', 'IB', 'Limping', 'ND'])
        self.assertEqual([r['title'] for r in data['upcoming_vaccinations']], ['IB', 'Pox'])
        self.assertEqual(data['upcoming_vaccinations'][0]['days_until'], 2)
        self.assertEqual([r['title'] for r in data['past_vaccinations']], ['ND'])

        data = self.app.get('/health?type=ISOLATION').get_json()
        self.assertEqual([r['title'] for r in data['records']], ['Limping'])
        data = self.app.get('/health?q=layers').get_json()
        self.assertEqual(len(data['records']), 4)

    def test_delete(self):
        record = HealthRecord(flock_id=self.flock_id, record_type='CHECKUP', title='Weekly walk')
        db.session.add(record)
        db.session.commit()
        self.app.post(f'/health/records/{record.id}/delete')
        self.assertEqual(HealthRecord.query.count(), 0)

    def test_calendar(self):
        db.session.add(HealthRecord(flock_id=self.flock_id, date=date(2024, 3, 15), record_type='VACCINATION', title='ND', status='OPEN'))
        db.session.add(HealthRecord(flock_id=self.flock_id, date=date(2024, 3, 15), record_type='CHECKUP', title='Walk'))
        db.session.commit()

        data = self.app.get('/health/calendar?year=2024&month=3').get_json()
        self.assertEqual(data['month_name'], 'March')
        # March 2024 starts on a Friday; the grid starts on the Sunday before
        self.assertEqual(data['weeks'][0][0]['date'], '2024-02-25')
        self.assertFalse(data['weeks'][0][0]['in_month'])
        self.assertTrue(data['weeks'][0][5]['in_month'])
        self.assertEqual(data['prev'], {'year': 2024, 'month': 2})
        self.assertEqual(data['next'], {'year': 2024, 'month': 4})

        days = {d['date']: d for week in data['weeks'] for d in week}
        self.assertEqual([e['title'] for e in days['2024-03-15']['events']], ['ND'])

    def test_calendar_wraps_year(self):
        data = self.app.get('/health/calendar?year=2024&month=1').get_json()
        self.assertEqual(data['prev'], {'year': 2023, 'month': 12})
        data = self.app.get('/health/calendar?year=2024&month=13').get_json()
        self.assertEqual(data['month'], date.today().month)

if __name__ == '__main__':
    unittest.main()
