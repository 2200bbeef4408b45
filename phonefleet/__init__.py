"""
PhoneFleet Orchestrator

Job scheduling, realtime streaming and gesture mirroring across a fleet of
Android devices driven over adb.

Usage:
    from phonefleet.orchestrator import FleetOrchestrator

    fleet = FleetOrchestrator()
    await fleet.start()
    job = fleet.create_job("masscomment", {"url": url, "comments": texts}, device_ids)
"""

__version__ = "1.0.0"
