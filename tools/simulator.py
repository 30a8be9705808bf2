#!/usr/bin/env python3
import argparse
import asyncio
import json
import random

import requests
from websockets import connect

STATUS_CYCLE = ['available', 'en route', 'on scene', 'arrived at patient', 'transporting', 'completed']


def register(api, count):
    # create initial ambulances over HTTP so each one gets a tier and a shift
    ambulances = []
    for i in range(count):
        body = {
            'name': f'Amb-A{i+1}',
            'designation_level': random.randint(1, 4),
            'shift_length_hours': random.choice([8, 10, 12, 24]),
            'latitude': random.uniform(-0.1, 0.1) + (i * 0.01),
            'longitude': random.uniform(36.7, 36.9),
        }
        r = requests.post(f'{api}/api/ambulances', json=body, timeout=5)
        r.raise_for_status()
        amb = r.json()
        amb['cycle'] = 0
        ambulances.append(amb)
        print('registered', amb['name'], 'tier', amb['designation_level'])
    return ambulances


async def run(ambulances, interval, ws_url, status_rate):
    async with connect(ws_url) as websocket:
        print('Simulator connected to', ws_url)
        while True:
            for a in ambulances:
                # random small move
                a['latitude'] += random.uniform(-0.0005, 0.0005)
                a['longitude'] += random.uniform(-0.0005, 0.0005)
                msg = {'type': 'locationUpdate',
                       'data': {'name': a['name'], 'latitude': a['latitude'], 'longitude': a['longitude']}}
                await websocket.send(json.dumps(msg))

                # units only walk forward through the call cycle
                if a['status'] != 'available' and random.random() < status_rate:
                    a['cycle'] = (a['cycle'] + 1) % len(STATUS_CYCLE)
                    a['status'] = STATUS_CYCLE[a['cycle']]
                    msg = {'type': 'statusUpdate', 'data': {'ambulanceId': a['id'], 'status': a['status']}}
                    await websocket.send(json.dumps(msg))
                    print('sent', msg)
            await asyncio.sleep(interval)


async def listen(ws_url, ambulances):
    # follow dispatch assignments so the simulated crew picks up the call
    by_id = {a['id']: a for a in ambulances}
    async with connect(ws_url) as websocket:
        async for text in websocket:
            event = json.loads(text)
            if event.get('type') == 'assignment':
                amb = by_id.get(event['data']['ambulanceId'])
                if amb:
                    amb['status'] = 'en route'
                    amb['cycle'] = 1
                    print('assigned', amb['name'], 'to request', event['data']['requestId'])


async def main(args):
    ambulances = register(args.api, args.count)
    await asyncio.gather(
        run(ambulances, args.interval, args.ws, args.status_rate),
        listen(args.ws, ambulances),
    )


if __name__ == '__main__':
    p = argparse.ArgumentParser()
    p.add_argument('--count', type=int, default=3)
    p.add_argument('--interval', type=float, default=3.0)
    p.add_argument('--status-rate', type=float, default=0.2)
    p.add_argument('--api', default='http://localhost:8000')
    p.add_argument('--ws', default='ws://localhost:8000/ws')
    args = p.parse_args()
    asyncio.run(main(args))
