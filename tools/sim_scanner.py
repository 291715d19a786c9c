#!/usr/bin/env python3
"""
ScanHub simulator feed (scanner devices over HTTP)

- Registers N simulated scanners, then heartbeats and submits barcode reads
  against a running ScanHub server, the same calls real firmware makes.
- Barcodes come from --barcode (repeatable) or a small built-in EAN-13 set.
- Every Nth scan (--ai-every) carries a device-side analysis
  (source=ai_analysis) so the server skips the AI call for it.
- --repeat resends the same barcode to exercise the dashboard dedup paths.

Example:
    python tools/sim_scanner.py --url http://127.0.0.1:3001 --devices 2 --count 10
"""

from __future__ import annotations

import argparse
import random
import sys
import time
from typing import List, Optional

import httpx

DEFAULT_URL = "http://127.0.0.1:3001"
DEFAULT_BARCODES = [
    "8901030865278",
    "5449000000996",
    "4006381333931",
    "0012000161155",
    "7622210449283",
]


def now_ms() -> int:
    return int(time.time() * 1000)


class SimScanner:
    def __init__(self, client: httpx.Client, device_id: str, name: str, ai_capable: bool):
        self.client = client
        self.device_id = device_id
        self.name = name
        self.ai_capable = ai_capable
        self.sent = 0
        self.failed = 0

    def register(self) -> None:
        resp = self.client.post("/api/esp32/register", json={
            "deviceId": self.device_id,
            "deviceName": self.name,
            "ipAddress": "127.0.0.1",
            "firmwareVersion": "sim-1.0",
            "aiCapable": self.ai_capable,
        })
        resp.raise_for_status()
        print(f"[sim] registered {self.device_id} ({self.name})")

    def ping(self) -> bool:
        try:
            resp = self.client.post(f"/api/esp32/ping/{self.device_id}")
            if resp.status_code == 404:
                # server restarted and lost the registry
                self.register()
        except httpx.HTTPError as e:
            self.failed += 1
            print(f"[sim] {self.device_id} ping failed: {e}", file=sys.stderr)
            return False
        return True

    def scan(self, barcode: str, *, with_analysis: bool = False) -> Optional[dict]:
        body = {"barcodeData": barcode, "scanType": "EAN13", "timestamp": now_ms()}
        if with_analysis:
            body.update({
                "source": "ai_analysis",
                "productName": f"Sim Product {barcode[-4:]}",
                "productType": "Grocery",
                "productDetails": "Generated by sim_scanner",
            })
        try:
            resp = self.client.post(f"/api/esp32/scan/{self.device_id}", json=body)
        except httpx.HTTPError as e:
            self.failed += 1
            print(f"[sim] {self.device_id} scan failed: {e}", file=sys.stderr)
            return None
        if resp.status_code != 200:
            self.failed += 1
            print(f"[sim] {self.device_id} HTTP {resp.status_code}: {resp.text[:120]}", file=sys.stderr)
            return None
        self.sent += 1
        data = resp.json()
        ai = data.get("aiAnalysis") or {}
        flag = " (fallback)" if ai.get("fallback") else ""
        print(f"[sim] {self.device_id} {barcode} -> {data.get('scanId')} {ai.get('title')}{flag}")
        return data


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="ScanHub Simulator Feed")
    p.add_argument("--url", default=DEFAULT_URL, help="ScanHub base URL")
    p.add_argument("--devices", type=int, default=1)
    p.add_argument("--count", type=int, default=5, help="Scans per device (0 = forever)")
    p.add_argument("--interval", type=float, default=1.5, help="Seconds between scans")
    p.add_argument("--barcode", action="append", default=[], help="Barcode to send (repeatable)")
    p.add_argument("--ai-every", type=int, default=0, help="Attach device-side analysis every Nth scan")
    p.add_argument("--repeat", action="store_true", help="Send the same barcode every time")
    p.add_argument("--basic", action="store_true", help="Register devices as not AI-capable")
    p.add_argument("--timeout", type=float, default=20.0)
    p.add_argument("--seed", type=int, default=42)
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    rng = random.Random(args.seed)
    barcodes = args.barcode or DEFAULT_BARCODES

    with httpx.Client(base_url=args.url.rstrip("/"), timeout=args.timeout) as client:
        scanners = []
        for i in range(1, max(1, args.devices) + 1):
            label = "Basic Scanner" if args.basic else "AI Scanner"
            sim = SimScanner(client, f"sim-{i:03d}", f"{label} {i}", ai_capable=not args.basic)
            try:
                sim.register()
            except httpx.HTTPError as e:
                print(f"[sim] cannot reach {args.url}: {e}", file=sys.stderr)
                return 2
            scanners.append(sim)

        n = 0
        try:
            while args.count == 0 or n < args.count:
                n += 1
                for sim in scanners:
                    sim.ping()
                    barcode = barcodes[0] if args.repeat else rng.choice(barcodes)
                    with_analysis = bool(args.ai_every) and n % args.ai_every == 0
                    sim.scan(barcode, with_analysis=with_analysis)
                time.sleep(args.interval)
        except KeyboardInterrupt:
            pass

    for sim in scanners:
        print(f"[sim] {sim.device_id}: sent={sim.sent} failed={sim.failed}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
