from fastapi.testclient import TestClient
from app.main import app

client = TestClient(app)

print('ROOT:')
print(client.get('/').json())

print('\nHEALTH:')
print(client.get('/health').json())

print('\nSTORE HEALTH:')
try:
    resp = client.get('/health/db')
    print(resp.status_code)
    try:
        print(resp.json())
    except Exception:
        print(resp.text)
except Exception as e:
    print('Store call raised exception:', e)

print('\nNEARBY (5 km around 0,0):')
resp = client.get('/incidents/nearby', params={'longitude': 0, 'latitude': 0, 'radius': 5000})
print(resp.status_code, resp.json().get('message'))
