"""
System metrics: snapshot collection and per-connection publishing.

SystemCollector gathers one point-in-time view of the device using psutil
(run in a worker thread, since several psutil calls block). On Android
userlands psutil often cannot see thermal sensors, so temperatures fall
back to reading /sys/class/thermal directly.

MetricsPublisher pushes a snapshot to one client immediately on subscribe
and then every interval seconds until unsubscribed.
"""

import asyncio
import logging
import os
import platform
import socket
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiofiles
import psutil

logger = logging.getLogger(__name__)

THERMAL_ROOT = Path("/sys/class/thermal")
GB = 1024 ** 3


def _round(value: Optional[float], digits: int = 1) -> Optional[float]:
    return None if value is None else round(value, digits)


class SystemCollector:
    """Produces snapshots of system state."""

    def __init__(self, process_limit: int = 15, thermal_root: Path = THERMAL_ROOT):
        self._process_limit = process_limit
        self._thermal_root = thermal_root
        # Prime the CPU counters so the first non-blocking read is meaningful
        psutil.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None, percpu=True)

    # ------------------------------------------------------------------
    # Individual sections (blocking; called via asyncio.to_thread)
    # ------------------------------------------------------------------

    def _cpu(self) -> dict:
        info = {
            "percent": psutil.cpu_percent(interval=None),
            "per_core": psutil.cpu_percent(interval=None, percpu=True),
            "count_logical": psutil.cpu_count(logical=True),
            "count_physical": psutil.cpu_count(logical=False),
            "freq_current": None,
            "freq_max": None,
            "load_avg": None,
        }
        try:
            freq = psutil.cpu_freq()
            if freq:
                info["freq_current"] = _round(freq.current)
                info["freq_max"] = _round(freq.max)
        except (OSError, NotImplementedError):
            pass
        try:
            info["load_avg"] = [round(x, 2) for x in os.getloadavg()]
        except OSError:
            pass
        return info

    def _memory(self) -> dict:
        ram = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return {
            "total": ram.total,
            "used": ram.used,
            "available": ram.available,
            "percent": ram.percent,
            "swap_total": swap.total,
            "swap_used": swap.used,
            "swap_percent": swap.percent,
        }

    def _disk(self) -> dict:
        usage = psutil.disk_usage("/")
        return {
            "total_gb": round(usage.total / GB, 2),
            "used_gb": round(usage.used / GB, 2),
            "free_gb": round(usage.free / GB, 2),
            "percent": usage.percent,
        }

    def _network(self) -> dict:
        try:
            return psutil.net_io_counters()._asdict()
        except (OSError, AttributeError):
            # No /proc/net/dev inside some proot setups
            return {}

    def _processes(self) -> list[dict]:
        procs = []
        for proc in psutil.process_iter(["pid", "name", "username", "cpu_percent",
                                         "memory_percent", "status"]):
            try:
                info = proc.info
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            info["cpu_percent"] = info.get("cpu_percent") or 0.0
            info["memory_percent"] = _round(info.get("memory_percent") or 0.0, 2)
            procs.append(info)
        procs.sort(key=lambda p: p["cpu_percent"], reverse=True)
        return procs[:self._process_limit]

    def _device(self) -> dict:
        return {
            "hostname": socket.gethostname(),
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
            "python": platform.python_version(),
            "boot_time": psutil.boot_time(),
        }

    def _battery(self) -> dict:
        try:
            battery = psutil.sensors_battery()
        except (OSError, AttributeError, NotImplementedError):
            battery = None
        if battery is None:
            return {"available": False}
        return {
            "available": True,
            "percent": _round(battery.percent),
            "plugged": battery.power_plugged,
            "secs_left": battery.secsleft if battery.secsleft >= 0 else None,
        }

    def _psutil_temperatures(self) -> list[dict]:
        try:
            sensors = psutil.sensors_temperatures()
        except (OSError, AttributeError, NotImplementedError):
            return []
        readings = []
        for chip, entries in sensors.items():
            for entry in entries:
                readings.append({
                    "name": entry.label or chip,
                    "celsius": _round(entry.current),
                })
        return readings

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def _thermal_zones(self) -> list[dict]:
        """Read /sys/class/thermal/thermal_zone*/{type,temp}."""
        readings = []
        if not self._thermal_root.is_dir():
            return readings
        for zone in sorted(self._thermal_root.glob("thermal_zone*")):
            try:
                async with aiofiles.open(zone / "temp") as f:
                    raw = (await f.read()).strip()
                name = zone.name
                type_file = zone / "type"
                if type_file.is_file():
                    async with aiofiles.open(type_file) as f:
                        name = (await f.read()).strip() or name
                # Kernel reports millidegrees
                readings.append({"name": name, "celsius": round(int(raw) / 1000, 1)})
            except (OSError, ValueError):
                continue
        return readings

    async def cpu(self) -> dict:
        return await asyncio.to_thread(self._cpu)

    async def memory(self) -> dict:
        return await asyncio.to_thread(self._memory)

    async def processes(self) -> list[dict]:
        return await asyncio.to_thread(self._processes)

    async def device(self) -> dict:
        return await asyncio.to_thread(self._device)

    async def battery(self) -> dict:
        return await asyncio.to_thread(self._battery)

    async def temperatures(self) -> list[dict]:
        readings = await asyncio.to_thread(self._psutil_temperatures)
        if not readings:
            readings = await self._thermal_zones()
        return readings

    async def ports(self) -> list:
        """Listening ports. proot has no netlink access, so always empty."""
        return []

    async def snapshot(self) -> dict:
        """One bundle of everything above."""
        def collect() -> dict:
            return {
                "cpu": self._cpu(),
                "memory": self._memory(),
                "disk": self._disk(),
                "network": self._network(),
                "processes": self._processes(),
                "device": self._device(),
                "battery": self._battery(),
                "uptime": int(time.time() - psutil.boot_time()),
            }

        data = await asyncio.to_thread(collect)
        data["temperatures"] = await self.temperatures()
        data["timestamp"] = int(time.time() * 1000)
        return data


# =============================================================================
# PUBLISHER
# =============================================================================


SendFn = Callable[[dict], Awaitable[Any]]


class MetricsPublisher:
    """
    Periodic snapshot push for one connection.

    At most one timer task is alive at any time; subscribe() cancels any
    previous one before starting a new one. A failed snapshot is logged
    and the timer keeps running.
    """

    def __init__(self, collect: Callable[[], Awaitable[dict]], send: SendFn,
                 interval: float = 2.0):
        self._collect = collect
        self._send = send
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _push(self) -> None:
        try:
            data = await self._collect()
        except Exception as e:
            logger.error(f"Error getting system data: {e}")
            return
        await self._send({"type": "system:data", "data": data})

    async def _run(self) -> None:
        while True:
            try:
                await self._push()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Delivery failure; the connection handler notices closed sockets
                logger.warning(f"Failed to deliver system data: {e}")
            await asyncio.sleep(self._interval)

    def subscribe(self) -> None:
        self.unsubscribe()
        self._task = asyncio.create_task(self._run())

    def unsubscribe(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
