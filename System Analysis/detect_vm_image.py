#!/usr/bin/env python3

# -------------------------------------------------------
# Script: detect_vm_image.py
#
# Description:
# This script detects whether it is running inside a known default-provisioned
# virtual machine image. It scores hardware identity strings (keyboard, pointing
# devices, monitor and processor) against the signatures of that image and
# fingerprints the desktop wallpaper. If the image is recognized, a warning is
# shown and the script exits with a non-zero status.
#
# Usage:
# ./detect_vm_image.py [options]
#
# Options:
# -v, --verbose               Enable verbose logging (INFO level).
# -vv, --debug                Enable debug logging (DEBUG level).
# -o, --output FILE           Output the detection report to a specified file (JSON format).
# -w, --wallpaper PATH        Use this wallpaper path instead of the one configured for the user.
# -n, --no-dialog             Do not show the warning dialog when a VM is detected.
# -k, --keep-running          Report a detected VM but exit with status 0.
# -h, --help                  Show help message and exit.
#
# Returns:
# Exit code 0 if no VM was detected, 1 if a VM was detected or the report could not be saved.
#
# Requirements:
#   - rich (install via: pip install rich==13.9.4)
#   - Pillow (install via: pip install Pillow==11.1.0)
#
# -------------------------------------------------------
# © 2025 Hendrik Buchwald. All rights reserved.
# -------------------------------------------------------

import argparse
import base64
import ctypes
import io
import json
import logging
import os
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from PIL import Image
from rich.console import Console
from rich.markup import escape
from rich.table import Table

T = TypeVar('T')

HARDWARE_SCORE_THRESHOLD = 5
FINGERPRINT_LENGTH = 64
KNOWN_WALLPAPER_FINGERPRINT = '/9j/4AAQSkZJRgABAQAAAQABAAD/2wCEAAwMDAwMDA0ODg0SExETEhsYFhYYGygd'

# Constants for registry keys and commands
WALLPAPER_REGISTRY_KEY = r'Control Panel\Desktop'
WALLPAPER_REGISTRY_VALUE = 'Wallpaper'
POWERSHELL_TIMEOUT = 30
# Windows PowerShell writes the OEM code page unless told otherwise
POWERSHELL_UTF8_PREAMBLE = "[Console]::OutputEncoding = [Text.Encoding]::UTF8; "

DIALOG_TITLE = 'System Check'
DIALOG_MESSAGE = 'Virtual Machine Detected'
MB_OK = 0x00000000
MB_ICONWARNING = 0x00000030


class DeviceCategory(Enum):
    """Enum representing the hardware classes queried from the inventory."""
    KEYBOARD = ('Win32_Keyboard', 'DeviceID', 'Description')
    POINTING_DEVICE = ('Win32_PointingDevice', 'PNPDeviceID', 'Description')
    DESKTOP_MONITOR = ('Win32_DesktopMonitor', 'PNPDeviceID', 'Description')
    PROCESSOR = ('Win32_Processor', 'Name', None)

    def __init__(self, device_class: str, identifier_property: str, description_property: Optional[str]):
        self.device_class = device_class
        self.identifier_property = identifier_property
        self.description_property = description_property

    @property
    def properties(self) -> List[str]:
        """Returns the inventory properties read for this category."""
        if self.description_property:
            return [self.description_property, self.identifier_property]
        return [self.identifier_property]


@dataclass(frozen=True)
class DeviceRecord:
    """Data class for one device returned by the inventory."""
    description: str = ''
    identifier: str = ''


@dataclass(frozen=True)
class DeviceSignature:
    """Data class for the expected identity of one device of the VM image."""
    name: str
    category: DeviceCategory
    expected_identifier_substring: str
    expected_description_substring: Optional[str] = None


@dataclass
class CheckResult:
    """Data class for the outcome of one device signature check."""
    name: str
    matched: bool = False
    score: int = 0


@dataclass
class WallpaperInfo:
    """Data class for wallpaper diagnostics."""
    path: str = ''
    fingerprint: str = ''
    image_format: str = ''
    width: int = 0
    height: int = 0
    matched: bool = False


@dataclass
class DetectionReport:
    """Data class for the full detection outcome."""
    checks: List[CheckResult] = field(default_factory=list)
    hardware_score: int = 0
    hardware_detected: bool = False
    wallpaper_detected: bool = False
    wallpaper: Optional[WallpaperInfo] = None

    @property
    def detected(self) -> bool:
        return self.hardware_detected or self.wallpaper_detected


# Checked in this order; the processor only has a name to compare.
DEVICE_SIGNATURES: List[DeviceSignature] = [
    DeviceSignature(
        name='Keyboard',
        category=DeviceCategory.KEYBOARD,
        expected_identifier_substring=r'ACPI\PNP0303\4&22F5829E&0',
        expected_description_substring='Standard PS/2 Keyboard',
    ),
    DeviceSignature(
        name='Mouse',
        category=DeviceCategory.POINTING_DEVICE,
        expected_identifier_substring=r'ACPI\PNP0F13\4&22F5829E&0',
        expected_description_substring='PS2/2 Compatible Mouse',
    ),
    DeviceSignature(
        name='Input',
        category=DeviceCategory.POINTING_DEVICE,
        expected_identifier_substring=r'USB\VID_0627&PID_0001\28754-0000:00:04.0-1',
        expected_description_substring='USB Input Device',
    ),
    DeviceSignature(
        name='Monitor',
        category=DeviceCategory.DESKTOP_MONITOR,
        expected_identifier_substring=r'DISPLAY\RHT1234\4&22F5829E&0',
        expected_description_substring='Generic PnP Monitor',
    ),
    DeviceSignature(
        name='Processor',
        category=DeviceCategory.PROCESSOR,
        expected_identifier_substring='Intel Core Processor (Broadwell)',
    ),
]


def result_or_default(operation: Callable[[], T], default: T, description: str) -> T:
    """Runs an operation and returns the default value if it raises."""
    try:
        return operation()
    except Exception as e:
        logging.debug(f"Error {description}: {e}")
        return default


class BaseInventoryProvider(ABC):
    """Abstract base class for hardware inventory providers."""

    @abstractmethod
    def query(self, category: DeviceCategory) -> List[DeviceRecord]:
        pass


class BasePreferenceStore(ABC):
    """Abstract base class for user preference stores."""

    @abstractmethod
    def get(self, key: str, value: str) -> Optional[str]:
        pass


class BaseFileReader(ABC):
    """Abstract base class for file readers."""

    @abstractmethod
    def read(self, path: str) -> bytes:
        pass


class WmiInventoryProvider(BaseInventoryProvider):
    """Inventory provider querying WMI through PowerShell."""

    def __init__(self, timeout: int = POWERSHELL_TIMEOUT):
        self.timeout = timeout

    def query(self, category: DeviceCategory) -> List[DeviceRecord]:
        """Lists the devices of a category."""
        output = self._run_powershell(self._build_command(category))
        if not output.strip():
            logging.debug(f"No {category.device_class} instances found.")
            return []

        data = json.loads(output)
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise ValueError(f"Unexpected {category.device_class} output: {output!r}")

        records = []
        for item in data:
            if not isinstance(item, dict):
                raise ValueError(f"Unexpected {category.device_class} entry: {item!r}")
            description = ''
            if category.description_property:
                description = self._as_text(item.get(category.description_property))
            records.append(DeviceRecord(
                description=description,
                identifier=self._as_text(item.get(category.identifier_property)),
            ))
        logging.debug(f"Detected {category.device_class} records: {records}")
        return records

    @staticmethod
    def _build_command(category: DeviceCategory) -> str:
        """Builds the PowerShell command for a category."""
        return (
            f"{POWERSHELL_UTF8_PREAMBLE}"
            f"Get-CimInstance -ClassName {category.device_class} -ErrorAction Stop | "
            f"Select-Object {', '.join(category.properties)} | ConvertTo-Json -Compress"
        )

    @staticmethod
    def _as_text(value: Any) -> str:
        return '' if value is None else str(value)

    def _run_powershell(self, command: str) -> str:
        """Runs a PowerShell command and returns its standard output."""
        exe = shutil.which('powershell.exe') or shutil.which('powershell') or shutil.which('pwsh')
        if not exe:
            raise FileNotFoundError("PowerShell not found.")
        result = subprocess.run([exe, '-NoProfile', '-NonInteractive', '-Command', command],
                                stdout=subprocess.PIPE,
                                stderr=subprocess.PIPE,
                                text=True,
                                encoding='utf-8-sig',
                                errors='replace',
                                timeout=self.timeout)
        if result.returncode != 0:
            raise RuntimeError(f"PowerShell failed: {result.stderr.strip()}")
        return result.stdout


class RegistryPreferenceStore(BasePreferenceStore):
    """Preference store reading values below HKEY_CURRENT_USER."""

    def get(self, key: str, value: str) -> Optional[str]:
        """Reads a value, returning None if the key or value is absent."""
        import winreg
        try:
            with winreg.OpenKey(winreg.HKEY_CURRENT_USER, key) as handle:
                data, value_type = winreg.QueryValueEx(handle, value)
        except FileNotFoundError:
            return None
        if data is None:
            return None
        if value_type == winreg.REG_EXPAND_SZ:
            return winreg.ExpandEnvironmentStrings(data)
        return str(data)


class StaticPreferenceStore(BasePreferenceStore):
    """Preference store answering every lookup with one fixed value."""

    def __init__(self, data: Optional[str]):
        self.data = data

    def get(self, key: str, value: str) -> Optional[str]:
        return self.data


class DiskFileReader(BaseFileReader):
    """File reader for the local file system."""

    def read(self, path: str) -> bytes:
        with open(path, 'rb') as f:
            return f.read()


def score_records(signature: DeviceSignature, records: List[DeviceRecord]) -> int:
    """Scores device records against a signature.

    A record scores 1 if its identifier contains the expected identifier and
    1 more if its description also contains the expected description. A
    description without a matching identifier never scores. Comparisons are
    case-insensitive and scores of all records are summed.
    """
    expected_identifier = signature.expected_identifier_substring.lower()
    expected_description = (signature.expected_description_substring or '').lower()
    score = 0
    for record in records:
        if not record.identifier or expected_identifier not in record.identifier.lower():
            continue
        score += 1
        if expected_description and record.description and expected_description in record.description.lower():
            score += 1
    return score


class DeviceSignatureChecker:
    """Checks one device category of the inventory against a signature."""

    def __init__(self, inventory: BaseInventoryProvider):
        self.inventory = inventory

    def check(self, signature: DeviceSignature) -> CheckResult:
        """Runs the check, treating inventory errors as no evidence."""
        records = result_or_default(
            lambda: self.inventory.query(signature.category),
            [],
            f"querying {signature.category.device_class} for {signature.name} check",
        )
        score = result_or_default(
            lambda: score_records(signature, records),
            0,
            f"scoring {signature.name} check",
        )
        logging.debug(f"{signature.name} check scored {score}.")
        return CheckResult(name=signature.name, matched=score >= 1, score=score)


class HardwareScoreAggregator:
    """Sums the scores of all device signature checks."""

    def __init__(self, inventory: BaseInventoryProvider,
                 signatures: Optional[List[DeviceSignature]] = None,
                 threshold: int = HARDWARE_SCORE_THRESHOLD):
        self.checker = DeviceSignatureChecker(inventory)
        self.signatures = DEVICE_SIGNATURES if signatures is None else signatures
        self.threshold = threshold

    def collect(self) -> List[CheckResult]:
        """Runs every check in signature order."""
        return [self.checker.check(signature) for signature in self.signatures]

    def is_match(self, results: List[CheckResult]) -> bool:
        """Decides on the summed scores; the matched flags are ignored."""
        total = sum(result.score for result in results)
        logging.info(f"Hardware score: {total} (threshold {self.threshold})")
        return total >= self.threshold

    def run(self) -> bool:
        return self.is_match(self.collect())


def fingerprint(data: bytes) -> str:
    """Returns the first base64 characters of the data."""
    return base64.b64encode(data).decode('ascii')[:FINGERPRINT_LENGTH]


class WallpaperFingerprintChecker:
    """Compares the desktop wallpaper against the stock image of the VM."""

    def __init__(self, preferences: BasePreferenceStore, files: BaseFileReader,
                 expected_fingerprint: str = KNOWN_WALLPAPER_FINGERPRINT):
        self.preferences = preferences
        self.files = files
        self.expected_fingerprint = expected_fingerprint

    def _get_path(self) -> str:
        return result_or_default(
            lambda: (self.preferences.get(WALLPAPER_REGISTRY_KEY, WALLPAPER_REGISTRY_VALUE) or '').strip(),
            '',
            "reading wallpaper path",
        )

    def _read_image(self, path: str) -> bytes:
        return result_or_default(lambda: self.files.read(path), b'', f"reading wallpaper '{path}'") or b''

    def _matches(self, data: bytes) -> bool:
        if not data:
            return False
        current = result_or_default(lambda: fingerprint(data), '', "encoding wallpaper")
        return bool(current) and current == self.expected_fingerprint

    def run(self) -> bool:
        """Returns True if the wallpaper fingerprint equals the known one."""
        path = self._get_path()
        if not path:
            logging.debug("No wallpaper configured.")
            return False
        matched = self._matches(self._read_image(path))
        logging.info(f"Wallpaper '{path}' matches known image: {matched}")
        return matched

    def describe(self) -> WallpaperInfo:
        """Collects wallpaper diagnostics for the report."""
        info = WallpaperInfo(path=self._get_path())
        if not info.path:
            return info
        data = self._read_image(info.path)
        if not data:
            return info
        info.fingerprint = result_or_default(lambda: fingerprint(data), '', "encoding wallpaper")
        info.matched = bool(info.fingerprint) and info.fingerprint == self.expected_fingerprint
        try:
            with Image.open(io.BytesIO(data)) as image:
                info.image_format = image.format or ''
                info.width, info.height = image.size
        except Exception as e:
            logging.debug(f"Error decoding wallpaper '{info.path}': {e}")
        return info


class VmImageDetector:
    """Combines the hardware and wallpaper detection."""

    def __init__(self, inventory: BaseInventoryProvider, preferences: BasePreferenceStore,
                 files: BaseFileReader):
        self.hardware = HardwareScoreAggregator(inventory)
        self.wallpaper = WallpaperFingerprintChecker(preferences, files)

    def run_detection(self) -> bool:
        """Returns True if the known VM image is detected."""
        hardware_detected = self.hardware.run()
        wallpaper_detected = self.wallpaper.run()
        return hardware_detected or wallpaper_detected

    def collect_report(self) -> DetectionReport:
        """Runs both detections and keeps the details."""
        checks = self.hardware.collect()
        wallpaper = self.wallpaper.describe()
        return DetectionReport(
            checks=checks,
            hardware_score=sum(check.score for check in checks),
            hardware_detected=self.hardware.is_match(checks),
            wallpaper_detected=wallpaper.matched,
            wallpaper=wallpaper,
        )


def create_detector(wallpaper: Optional[str] = None) -> VmImageDetector:
    """Creates a detector backed by the Windows collaborators."""
    preferences: BasePreferenceStore
    if wallpaper is not None:
        preferences = StaticPreferenceStore(wallpaper)
    else:
        preferences = RegistryPreferenceStore()
    return VmImageDetector(WmiInventoryProvider(), preferences, DiskFileReader())


def run_detection(wallpaper: Optional[str] = None) -> bool:
    """Runs the detection on the current system."""
    return create_detector(wallpaper).run_detection()


def show_warning() -> None:
    """Shows a blocking warning dialog, or logs the warning where none is available."""
    if os.name.lower() != 'nt':
        logging.warning(DIALOG_MESSAGE)
        return
    try:
        ctypes.windll.user32.MessageBoxW(None, DIALOG_MESSAGE, DIALOG_TITLE, MB_OK | MB_ICONWARNING)
    except Exception as e:
        logging.error(f"Error showing warning dialog: {e}")
        logging.warning(DIALOG_MESSAGE)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parses command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Detect a known default-provisioned virtual machine image.",
        formatter_class=argparse.RawTextHelpFormatter
    )

    # Global options
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging (INFO level).'
    )
    parser.add_argument(
        '-vv', '--debug',
        action='store_true',
        help='Enable debug logging (DEBUG level).'
    )
    parser.add_argument(
        '-o', '--output',
        type=str,
        help='Output the detection report to a specified file (JSON format).'
    )
    parser.add_argument(
        '-w', '--wallpaper',
        type=str,
        help='Use this wallpaper path instead of the one configured for the user.'
    )
    parser.add_argument(
        '-n', '--no-dialog',
        action='store_true',
        help='Do not show the warning dialog when a VM is detected.'
    )
    parser.add_argument(
        '-k', '--keep-running',
        action='store_true',
        help='Report a detected VM but exit with status 0.'
    )

    return parser.parse_args(argv)


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Sets up the logging configuration."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def collect_results(report: DetectionReport) -> Dict[str, Any]:
    """Collects the detection report into a dictionary."""
    wallpaper = report.wallpaper or WallpaperInfo()
    return {
        'Detected': report.detected,
        'Hardware': {
            'Detected': report.hardware_detected,
            'Score': report.hardware_score,
            'Threshold': HARDWARE_SCORE_THRESHOLD,
            'Checks': {check.name: {'Matched': check.matched, 'Score': check.score} for check in report.checks},
        },
        'Wallpaper': {
            'Detected': report.wallpaper_detected,
            'Path': wallpaper.path,
            'Fingerprint': wallpaper.fingerprint,
            'Format': wallpaper.image_format,
            'Size': f"{wallpaper.width}x{wallpaper.height}" if wallpaper.width else '',
        },
    }


def save_output(data: Dict[str, Any], filepath: str) -> bool:
    """Saves the detection results to a JSON file."""
    try:
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=4)
        logging.info(f"Detection results saved to '{filepath}'.")
        return True
    except Exception as e:
        logging.error(f"Error saving detection results: {e}")
        return False


def display_results(report: DetectionReport, console: Optional[Console] = None) -> None:
    """Displays the detection report as tables."""
    console = console or Console()

    table = Table(title="Hardware Signatures")
    table.add_column("Check", style="bold")
    table.add_column("Matched")
    table.add_column("Score", justify="right")
    for check in report.checks:
        table.add_row(check.name, "yes" if check.matched else "no", str(check.score))
    table.add_row("Total", "yes" if report.hardware_detected else "no", str(report.hardware_score), style="bold")
    console.print(table)

    wallpaper = report.wallpaper
    if wallpaper and wallpaper.path:
        details = Table(title="Wallpaper", show_header=False)
        details.add_column(justify="right", style="bold")
        details.add_column()
        details.add_row("Path", escape(wallpaper.path))
        if wallpaper.image_format:
            details.add_row("Format", f"{wallpaper.image_format} {wallpaper.width}x{wallpaper.height}")
        if wallpaper.fingerprint:
            details.add_row("Fingerprint", wallpaper.fingerprint)
        details.add_row("Matched", "yes" if wallpaper.matched else "no")
        console.print(details)

    if report.detected:
        console.print(f"[bold red]{DIALOG_MESSAGE}[/bold red]")
    else:
        console.print("[bold green]No VM detected[/bold green]")


def main(argv: Optional[List[str]] = None) -> None:
    """Main function to orchestrate the VM image detection."""
    args = parse_arguments(argv)
    setup_logging(
        verbose=args.verbose,
        debug=args.debug
    )

    console = Console()
    console.print("Running VM detection...")
    try:
        report = create_detector(args.wallpaper).collect_report()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(0)

    display_results(report, console)
    if args.output and not save_output(collect_results(report), args.output):
        logging.error("Failed to save detection results.")
        sys.exit(1)

    if report.detected:
        if not args.no_dialog:
            show_warning()
        if not args.keep_running:
            sys.exit(1)
        return

    console.print("No VM detected, application can proceed.")
    sys.exit(0)


if __name__ == "__main__":
    main()
