#!/usr/bin/env python3
"""
GPS Device Simulator for LiveTrack
Walks a sample bus route and POSTs fixes to /gps/update with the bus API key
"""

import json
import time
import random
import math
from typing import Dict, Tuple, List, Optional
import click
import requests
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

def haversine(start, end):
    """Calculate distance between two lat/lon points using Haversine formula"""
    R = 6371000  # Earth radius in meters
    φ1, λ1 = map(math.radians, start)
    φ2, λ2 = map(math.radians, end)
    dφ = φ2 - φ1
    dλ = λ2 - λ1
    a = math.sin(dφ/2)**2 + math.cos(φ1)*math.cos(φ2)*math.sin(dλ/2)**2
    return 2*R*math.atan2(math.sqrt(a), math.sqrt(1-a))

def bearing(start, end) -> float:
    """Initial compass bearing from start to end, 0-360 degrees"""
    φ1, λ1 = map(math.radians, start)
    φ2, λ2 = map(math.radians, end)
    dλ = λ2 - λ1
    x = math.sin(dλ) * math.cos(φ2)
    y = math.cos(φ1)*math.sin(φ2) - math.sin(φ1)*math.cos(φ2)*math.cos(dλ)
    return (math.degrees(math.atan2(x, y)) + 360) % 360

class GPSDeviceSimulator:
    """Simulates a GPS device on a bus route"""

    def __init__(self, route_points: List[Tuple[float, float]], speed_kmh: float = 30.0):
        self.route_points = route_points
        self.speed_kmh = speed_kmh
        self.current_position_index = 0
        self.current_position = route_points[0]
        self.heading = 0.0

    def calculate_next_position(self, time_delta_seconds: float) -> Tuple[float, float]:
        """Calculate next position based on speed and time, updating self.current_position."""
        speed_ms = (self.speed_kmh * 1000) / 3600  # km/h → m/s
        remaining_time = time_delta_seconds

        # Keep moving until we've used up the time slice
        while remaining_time > 0:
            # Next waypoint index (wrap around)
            next_idx = (self.current_position_index + 1) % len(self.route_points)
            start = self.current_position
            end = self.route_points[next_idx]
            segment_dist = haversine(start, end)
            if segment_dist == 0:
                self.current_position_index = next_idx
                continue
            self.heading = bearing(start, end)

            travel_dist = speed_ms * remaining_time
            if travel_dist >= segment_dist:
                # Reached the next waypoint, carry the leftover time onward
                self.current_position = end
                self.current_position_index = next_idx
                remaining_time -= segment_dist / speed_ms
            else:
                frac = travel_dist / segment_dist
                self.current_position = (
                    start[0] + (end[0] - start[0]) * frac,
                    start[1] + (end[1] - start[1]) * frac,
                )
                remaining_time = 0

        return self.current_position

    def get_fix(self) -> Dict:
        """Generate a GPS fix payload"""
        # Add some randomness to simulate real GPS
        lat_noise = random.uniform(-0.00001, 0.00001)
        lon_noise = random.uniform(-0.00001, 0.00001)

        return {
            "lat": round(self.current_position[0] + lat_noise, 6),
            "lon": round(self.current_position[1] + lon_noise, 6),
            "timestamp": int(time.time() * 1000),  # epoch ms
            "speed": round(max(0.0, self.speed_kmh + random.uniform(-2, 2)), 1),
            "heading": round(self.heading, 1),
            "accuracy": round(random.uniform(5, 15), 1)
        }

class LiveTrackClient:
    """Posts fixes to the LiveTrack ingest endpoint"""

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 gps_device_id: Optional[str] = None, timeout: float = 5.0):
        self.url = f"{base_url.rstrip('/')}/gps/update"
        self.gps_device_id = gps_device_id
        self.timeout = timeout
        self.session = requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def publish(self, payload: Dict) -> Dict:
        """POST one fix; returns the response body, raising on HTTP errors"""
        if self.gps_device_id:
            payload = {**payload, "gpsDeviceId": self.gps_device_id}
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def close(self):
        self.session.close()

def create_sample_route() -> List[Tuple[float, float]]:
    """Create a sample bus route around University of Waterloo campus"""
    return [
        # University Station (Ring Road East, by Columbia Street)
        (43.472215, -80.544134),
        # South along Ring Road toward Environment 3
        (43.470803, -80.544892),
        # Curve around Earth Sciences & Engineering buildings
        (43.469955, -80.543523),
        # Down past Dana Porter Library (southwest corner)
        (43.468640, -80.542987),
        # Turn north between SLC and Hagey Hall
        (43.468870, -80.540970),
        # Past DC Lot and Health Sciences to University Avenue
        (43.469952, -80.539623),
        # Up past Tatham Centre toward Waterloo Stadium
        (43.471008, -80.539823),
        # Curve east by Architecture and the Davis Centre
        (43.472198, -80.540678),
        # Back up to Physics & Astronomy and University Station
        (43.472430, -80.542765),
        # Close the loop
        (43.472215, -80.544134),
    ]

@click.command()
@click.option('--url', envvar='LIVETRACK_URL', default='http://localhost:8000', help='LiveTrack base URL')
@click.option('--api-key', envvar='BUS_API_KEY', default=None, help='Bus API key')
@click.option('--gps-device-id', envvar='GPS_DEVICE_ID', default=None, help='Registered GPS device id (instead of an API key)')
@click.option('--interval', envvar='PUBLISH_INTERVAL', default=5, help='Publish interval in seconds')
@click.option('--speed', envvar='BUS_SPEED_KMH', default=30.0, help='Bus speed in km/h')
@click.option('--count', default=0, help='Number of fixes to send (0 = until stopped)')
def main(url, api_key, gps_device_id, interval, speed, count):
    """Run GPS device simulator"""
    if not api_key and not gps_device_id:
        raise click.UsageError("Provide --api-key or --gps-device-id")

    click.echo(f"Posting fixes to: {url}/gps/update")
    click.echo(f"Update interval: {interval} seconds")
    click.echo(f"Simulated speed: {speed} km/h")

    simulator = GPSDeviceSimulator(create_sample_route(), speed)
    client = LiveTrackClient(url, api_key=api_key, gps_device_id=gps_device_id)
    sent = 0

    click.echo("Press Ctrl+C to stop...\n")
    try:
        while not count or sent < count:
            simulator.calculate_next_position(interval)
            fix = simulator.get_fix()
            try:
                result = client.publish(fix)
                sent += 1
                click.echo(f"Published: {json.dumps(fix)} -> {result.get('data')}")
            except requests.RequestException as e:
                click.echo(f"Publish failed: {e}", err=True)

            time.sleep(interval)

    except KeyboardInterrupt:
        click.echo("\nStopping simulator...")
    finally:
        client.close()

if __name__ == "__main__":
    main()
