import time
from typing import Dict, Any, Optional

class StatsManager:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(StatsManager, cls).__new__(cls)
            cls._instance._init()
        return cls._instance

    def _init(self):
        self.role = "viewer"
        self.upload_bytes = 0
        self.download_bytes = 0
        self.start_time = time.time()

        # Recent throughput calculation
        self.last_calc_time = time.time()
        self.last_upload_bytes = 0
        self.last_download_bytes = 0
        self.current_upload_rate = 0.0
        self.current_download_rate = 0.0

        # Event counters: dropped units, faults, sessions...
        self.counters: Dict[str, int] = {}

        self.active_peer: Optional[str] = None
        self.bootstrap_state = "-"

    def reset(self):
        """Zero everything. Used between test scenarios."""
        self._init()

    def set_role(self, role: str):
        self.role = role

    def add_upload(self, num_bytes: int):
        self.upload_bytes += num_bytes

    def add_download(self, num_bytes: int):
        self.download_bytes += num_bytes

    def incr(self, name: str, amount: int = 1):
        self.counters[name] = self.counters.get(name, 0) + amount

    def count(self, name: str) -> int:
        return self.counters.get(name, 0)

    def update_peer(self, peer: Optional[tuple]):
        self.active_peer = f"{peer[0]}:{peer[1]}" if peer else None

    def update_bootstrap_state(self, state: str):
        self.bootstrap_state = state

    def get_stats(self) -> Dict[str, Any]:
        now = time.time()

        dt = now - self.last_calc_time
        if dt >= 1.0: # Update rate every second roughly
            self.current_upload_rate = (self.upload_bytes - self.last_upload_bytes) / dt
            self.current_download_rate = (self.download_bytes - self.last_download_bytes) / dt

            self.last_upload_bytes = self.upload_bytes
            self.last_download_bytes = self.download_bytes
            self.last_calc_time = now

        return {
            "role": self.role,
            "uptime": int(now - self.start_time),
            "upload_rate": self.current_upload_rate,
            "download_rate": self.current_download_rate,
            "total_upload": self.upload_bytes,
            "total_download": self.download_bytes,
            "active_peer": self.active_peer,
            "bootstrap_state": self.bootstrap_state,
            "counters": dict(self.counters),
        }
