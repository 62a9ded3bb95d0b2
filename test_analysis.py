import os
os.environ['DATABASE_URL'] = 'sqlite://'

import io
import json
import unittest
from types import SimpleNamespace
from datetime import date
import httpx
import openai
from app import app, db, House, Flock, DailyLog, HealthRecord
from analysis import FlockAnalyst, build_analyst, make_result

class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

class FakeClient:
    def __init__(self, content=None, error=None):
        self.chat = SimpleNamespace(completions=FakeCompletions(content, error))

    @property
    def calls(self):
        return self.chat.completions.calls

def connection_error():
    return openai.APIConnectionError(request=httpx.Request('POST', 'https://api.openai.com/v1/chat/completions'))

class AnalystTestCase(unittest.TestCase):
    def setUp(self):
        self.flock = SimpleNamespace(breed='ISA Brown', bird_type='Layer', current_count=95, initial_count=100)
        self.logs = [
            SimpleNamespace(day=d, date=date(2024, 1, d), mortality=1, mortality_reason=None, feed_consumed_kg=10,
                            water_consumed_l=20, avg_weight_g=1800, egg_production=80, notes=None)
            for d in range(10, 0, -1)
        ]

    def test_not_configured(self):
        result = build_analyst(None).analyze_flock_performance(self.flock, self.logs)
        self.assertEqual(result['analysis'], "API Key not configured. Please check your environment variables.")
        self.assertEqual(result['alert_level'], 'LOW')

    def test_flock_performance(self):
        client = FakeClient(json.dumps({
            'analysis': 'Mortality is steady.',
            'recommendations': ['Check ventilation', 'Weigh weekly', 'Review feed'],
            'alertLevel': 'MEDIUM',
        }))
        result = FlockAnalyst(client=client, model='test-model').analyze_flock_performance(self.flock, self.logs)

        self.assertEqual(result, {
            'analysis': 'Mortality is steady.',
            'recommendations': ['Check ventilation', 'Weigh weekly', 'Review feed'],
            'alert_level': 'MEDIUM',
        })
        call = client.calls[0]
        self.assertEqual(call['model'], 'test-model')
        prompt = call['messages'][1]['content']
        data = json.loads(prompt.split('Data: ', 1)[1])
        self.assertEqual([l['day'] for l in data['recentPerformance']], [4, 5, 6, 7, 8, 9, 10])
        self.assertEqual(data['ageDays'], 10)

    def test_api_failure(self):
        analyst = FlockAnalyst(client=FakeClient(error=connection_error()))
        result = analyst.analyze_flock_performance(self.flock, self.logs)
        self.assertEqual(result['analysis'], "Failed to generate analysis due to a technical error.")
        self.assertEqual(result['alert_level'], 'LOW')

    def test_malformed_payload(self):
        result = FlockAnalyst(client=FakeClient('not json')).analyze_flock_performance(self.flock, self.logs)
        self.assertEqual(result['analysis'], "Failed to generate analysis due to a technical error.")
        result = FlockAnalyst(client=FakeClient('[1, 2]')).analyze_flock_performance(self.flock, self.logs)
        self.assertEqual(result['analysis'], "Failed to generate analysis due to a technical error.")

    def test_missing_fields_defaulted(self):
        result = FlockAnalyst(client=FakeClient('{"alertLevel": "SEVERE"}')).analyze_flock_performance(self.flock, self.logs)
        self.assertEqual(result, {'analysis': 'No analysis generated.', 'recommendations': [], 'alert_level': 'LOW'})

    def test_diagnose_strips_data_url(self):
        client = FakeClient('{"analysis": "Pale comb", "recommendations": "Isolate bird", "alertLevel": "HIGH"}')
        result = FlockAnalyst(client=client).diagnose_bird_health('data:image/png;base64,QUJD')
        self.assertEqual(result['recommendations'], ['Isolate bird'])
        self.assertEqual(result['alert_level'], 'HIGH')
        image = client.calls[0]['messages'][1]['content'][0]
        self.assertEqual(image['image_url']['url'], 'data:image/jpeg;base64,QUJD')

    def test_make_result(self):
        self.assertEqual(make_result('x', None, None), {'analysis': 'x', 'recommendations': [], 'alert_level': 'LOW'})

class AnalysisRoutesTestCase(unittest.TestCase):
    def setUp(self):
        app.config['TESTING'] = True
        self.app = app.test_client()
        self.ctx = app.app_context()
        self.ctx.push()
        db.create_all()
        self.saved_analyst = app.extensions['flock_analyst']
        self.client = FakeClient('{"analysis": "ok", "recommendations": ["a"], "alertLevel": "LOW"}')
        app.extensions['flock_analyst'] = FlockAnalyst(client=self.client)

        h = House(name='H1')
        db.session.add(h)
        db.session.commit()
        f = Flock(house_id=h.id, batch_id='B1', name='Layers A', initial_count=100, current_count=100)
        db.session.add(f)
        db.session.commit()
        self.flock_id = f.id

    def tearDown(self):
        app.extensions['flock_analyst'] = self.saved_analyst
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def test_flock_analysis_route(self):
        db.session.add(DailyLog(flock_id=self.flock_id, day=1, date=date(2024, 1, 1), mortality=2))
        db.session.commit()
        data = self.app.post(f'/flock/{self.flock_id}/analysis').get_json()
        self.assertEqual(data['analysis'], 'ok')
        self.assertEqual(len(self.client.calls), 1)

    def test_diagnose_route(self):
        response = self.app.post('/diagnose', data={'image': (io.BytesIO(b'ABC'), 'bird.jpg')}, content_type='multipart/form-data')
        self.assertEqual(response.get_json()['analysis'], 'ok')
        image = self.client.calls[0]['messages'][1]['content'][0]
        self.assertEqual(image['image_url']['url'], 'data:image/jpeg;base64,QUJD')

    def test_diagnose_requires_image(self):
        self.assertEqual(self.app.post('/diagnose').status_code, 400)

    def test_health_trends_route(self):
        db.session.add(HealthRecord(flock_id=self.flock_id, record_type='ISOLATION', title='Limping', birds_affected=2))
        db.session.commit()
        data = self.app.post('/health/analysis').get_json()
        self.assertEqual(data['recommendations'], ['a'])
        prompt = self.client.calls[0]['messages'][1]['content']
        self.assertIn('Limping', prompt)

if __name__ == '__main__':
    unittest.main()
