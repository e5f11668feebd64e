#!/usr/bin/env python3
"""Validate local rate engine environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from importlib.metadata import version
from pathlib import Path
from typing import Callable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rate_engine.repository.data_repository import DataRepository
from rate_engine.services.resolution_service import ResolutionService
from rate_engine.services.surge_materializer import SurgeMaterializationService
from rate_engine.utils.config import get_settings

SEPARATOR_LINE = "=" * 44

REQUIRED_DISTRIBUTIONS = (
    ("fastapi", "fastapi"),
    ("uvicorn", "uvicorn"),
    ("pydantic", "pydantic"),
    ("numpy", "numpy"),
    ("pandas", "pandas"),
    ("httpx", "httpx"),
    ("pytest", "pytest"),
    ("tzdata", "tzdata"),
)


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def _run_check(name: str, check: Callable[[], str]) -> tuple[bool, str]:
    """Run one check; its return value is appended to the PASS line."""
    try:
        detail = check()
    except Exception as exc:  # pragma: no cover - runtime guard
        return _print_result(name, False, str(exc))
    return _print_result(name, True, detail)


def _check_python() -> str:
    found = sys.version.split()[0]
    if sys.version_info < (3, 11):
        raise RuntimeError(f"Python >= 3.11 required, found {found}")
    return f" {found}"


def _check_packages() -> str:
    missing: list[str] = []
    for module_name, dist_name in REQUIRED_DISTRIBUTIONS:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except Exception as exc:  # pragma: no cover - runtime guard
            missing.append(f"{module_name} ({exc})")
    if missing:
        raise RuntimeError("missing/unimportable -> " + "; ".join(missing))
    return ": all importable"


def main() -> int:
    temp_dir = tempfile.mkdtemp(prefix="rate-engine-env-")
    settings = replace(
        get_settings(),
        database_path=Path(temp_dir) / "rate_engine_validation.db",
    )
    repository = DataRepository(settings)

    def check_seed() -> str:
        repository.seed_demo_data_if_empty()
        nodes = repository.count_nodes()
        if nodes != 4:
            raise RuntimeError(f"expected 4 hierarchy nodes, got {nodes}")
        return f": {nodes} nodes, {repository.count_layers()} layers"

    def check_resolution() -> str:
        # Tuesday 16:00-19:00 in New York
        result = ResolutionService(repository=repository, settings=settings).resolve_for_entity(
            entity_id="venue-hall-a",
            start=datetime(2025, 3, 4, 21, 0, tzinfo=timezone.utc),
            end=datetime(2025, 3, 5, 0, 0, tzinfo=timezone.utc),
        )
        if abs(result.pricing.total_hours - 3.0) > 1e-9:
            raise RuntimeError(f"expected 3 booked hours, got {result.pricing.total_hours}")
        return f": total={result.pricing.total_price:.2f} {result.pricing.currency}"

    def check_surge() -> str:
        service = SurgeMaterializationService(repository=repository, settings=settings)
        materialized = service.materialize("surge-main-hall", use_latest_snapshot=False)
        return f": x{materialized.multiplier:.4f} ({materialized.approval_status.value})"

    checks: list[tuple[str, Callable[[], str]]] = [
        ("Python", _check_python),
        ("Required packages", _check_packages),
        ("Database initialization", lambda: repository.initialize_database() or ""),
        ("Demo hierarchy", check_seed),
        ("Resolution", check_resolution),
        ("Surge materialization", check_surge),
    ]

    results: list[str] = []
    all_passed = True
    try:
        for name, check in checks:
            ok, line = _run_check(name, check)
            results.append(line)
            all_passed = all_passed and ok
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Rate Engine Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
