"""
Fixtures and fake collaborators for the VM image detection tests.
"""
import base64
from typing import Dict, List, Optional

import pytest

from detect_vm_image import (
    KNOWN_WALLPAPER_FINGERPRINT,
    BaseFileReader,
    BaseInventoryProvider,
    BasePreferenceStore,
    DeviceCategory,
    DeviceRecord,
)

# Image bytes whose base64 form starts with the known fingerprint
KNOWN_IMAGE_HEADER = base64.b64decode(KNOWN_WALLPAPER_FINGERPRINT)

KEYBOARD = DeviceRecord(description='Standard PS/2 Keyboard', identifier=r'ACPI\PNP0303\4&22F5829E&0')
MOUSE = DeviceRecord(description='PS2/2 Compatible Mouse', identifier=r'ACPI\PNP0F13\4&22F5829E&0')
INPUT = DeviceRecord(description='USB Input Device', identifier=r'USB\VID_0627&PID_0001\28754-0000:00:04.0-1')
MONITOR = DeviceRecord(description='Generic PnP Monitor', identifier=r'DISPLAY\RHT1234\4&22F5829E&0')
PROCESSOR = DeviceRecord(identifier='Intel Core Processor (Broadwell)')


class FakeInventory(BaseInventoryProvider):
    """Inventory returning fixed records, optionally failing for some categories."""

    def __init__(self, records: Optional[Dict[DeviceCategory, List[DeviceRecord]]] = None,
                 failing: Optional[List[DeviceCategory]] = None):
        self.records = records or {}
        self.failing = failing or []
        self.queries: List[DeviceCategory] = []

    def query(self, category: DeviceCategory) -> List[DeviceRecord]:
        self.queries.append(category)
        if category in self.failing:
            raise RuntimeError(f"{category.device_class} unavailable")
        return list(self.records.get(category, []))


class FakePreferences(BasePreferenceStore):
    def __init__(self, data: Optional[str] = None, error: Optional[Exception] = None):
        self.data = data
        self.error = error

    def get(self, key: str, value: str) -> Optional[str]:
        if self.error:
            raise self.error
        return self.data


class FakeFiles(BaseFileReader):
    def __init__(self, files: Optional[Dict[str, bytes]] = None, error: Optional[Exception] = None):
        self.files = files or {}
        self.error = error

    def read(self, path: str) -> bytes:
        if self.error:
            raise self.error
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]


@pytest.fixture
def vm_inventory():
    """Inventory of the known VM image."""
    return FakeInventory({
        DeviceCategory.KEYBOARD: [KEYBOARD],
        DeviceCategory.POINTING_DEVICE: [MOUSE, INPUT],
        DeviceCategory.DESKTOP_MONITOR: [MONITOR],
        DeviceCategory.PROCESSOR: [PROCESSOR],
    })


@pytest.fixture
def known_wallpaper(tmp_path):
    """Wallpaper file carrying the header of the known stock image."""
    path = tmp_path / 'img0.jpg'
    path.write_bytes(KNOWN_IMAGE_HEADER + b'\x00' * 100)
    return path
