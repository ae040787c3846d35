#!/usr/bin/env python3
"""
generate_map.py: Fetch live bus locations from LiveTrack and render an interactive map using Folium.
"""

import requests
import folium


def fetch_locations(base_url: str, timeout: float = 5.0) -> list[dict]:
    """Return the locations served by /public/all-locations that have a position."""
    response = requests.get(f"{base_url.rstrip('/')}/public/all-locations", timeout=timeout)
    response.raise_for_status()
    body = response.json()

    locations = []
    for item in body.get("data", []):
        if item.get("lat") is None or item.get("lon") is None:
            continue
        locations.append({
            "busNumber": item.get("busNumber") or item.get("busId"),
            "lat": float(item["lat"]),
            "lon": float(item["lon"]),
            "speed": item.get("speed"),
            "updatedAt": item.get("updatedAt"),
            "isOnline": bool(item.get("isOnline"))
        })
    return locations


def create_map(
    locations: list[dict],
    output_file: str = "map.html",
    zoom_start: int = 12
) -> None:
    """Build and save an interactive map with one marker per bus, green if online."""
    if not locations:
        print("No location data found.")
        return

    # Center map at average coordinates
    avg_lat = sum(loc["lat"] for loc in locations) / len(locations)
    avg_lon = sum(loc["lon"] for loc in locations) / len(locations)
    m = folium.Map(location=(avg_lat, avg_lon), zoom_start=zoom_start)

    for loc in locations:
        status = "online" if loc["isOnline"] else "offline"
        popup = f"{loc['busNumber']} ({status}) {loc['speed']} km/h @ {loc['updatedAt']}"
        folium.CircleMarker(
            location=(loc["lat"], loc["lon"]),
            radius=7,
            popup=popup,
            weight=1,
            color="green" if loc["isOnline"] else "gray",
            fill=True,
            fill_opacity=0.7
        ).add_to(m)

    m.save(output_file)
    print(f"Map saved to {output_file}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate an interactive map of live bus locations.")
    parser.add_argument("--url", default="http://localhost:8000", help="LiveTrack base URL")
    parser.add_argument("--output", default="map.html", help="Output HTML file for the map")
    parser.add_argument("--zoom", type=int, default=12, help="Initial zoom level")
    args = parser.parse_args()

    locs = fetch_locations(args.url)
    create_map(locs, output_file=args.output, zoom_start=args.zoom)
