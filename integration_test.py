#!/usr/bin/env python3
"""
End-to-end integration test for Home Registry backups.

This script runs a full backup and restore workflow against a throwaway data
directory: it seeds a live store, takes snapshots through the library, the
CLI and the HTTP API, damages the data and restores it, and checks the
safety-snapshot recovery path.
"""

import json
import os
import shutil
import subprocess
import sys
import tempfile
from datetime import datetime
from pathlib import Path

# Add src to path
SRC_DIR = Path(__file__).parent / "src"
sys.path.insert(0, str(SRC_DIR))

# Test results tracking
RESULTS = {"passed": 0, "failed": 0, "tests": []}

WORK_DIR = None
ADMIN_TOKEN = "integration-admin-token"
ADMIN_ID = "00000000-0000-4000-8000-000000000001"
MEMBER_ID = "00000000-0000-4000-8000-000000000002"


def log(msg: str, level: str = "INFO") -> None:
    """Print a log message."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [{level}] {msg}")


def integration_test(name: str):
    """Decorator for test functions."""
    def decorator(func):
        def wrapper(*args, **kwargs):
            log(f"Running: {name}")
            try:
                result = func(*args, **kwargs)
                if result:
                    RESULTS["passed"] += 1
                    RESULTS["tests"].append({"name": name, "status": "PASS"})
                    log(f"  PASS: {name}", "PASS")
                else:
                    RESULTS["failed"] += 1
                    RESULTS["tests"].append({"name": name, "status": "FAIL"})
                    log(f"  FAIL: {name}", "FAIL")
                # Return None to avoid pytest warning about return values
                return None
            except Exception as e:
                RESULTS["failed"] += 1
                RESULTS["tests"].append({"name": name, "status": "ERROR", "error": str(e)})
                log(f"  ERROR: {name} - {e}", "ERROR")
                import traceback
                traceback.print_exc()
                return None
        return wrapper
    return decorator


def section(title: str) -> None:
    """Print a section header."""
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}\n")


def config_path() -> Path:
    return Path(WORK_DIR) / "config.yaml"


def make_service():
    from homeregistry.backup import BackupService
    from homeregistry.config import load_config

    return BackupService.from_settings(load_config(config_path()))


def run_cli(*args: str) -> subprocess.CompletedProcess:
    """Run the CLI in a subprocess against the integration config."""
    env = dict(os.environ)
    env["PYTHONPATH"] = str(SRC_DIR) + os.pathsep + env.get("PYTHONPATH", "")
    env["HOMEREGISTRY_CONFIG"] = str(config_path())
    env["HOMEREGISTRY_USER"] = "admin"
    env.pop("HOMEREGISTRY_BACKUP_PASSPHRASE", None)
    return subprocess.run(
        [sys.executable, "-m", "homeregistry", "-q", *args],
        capture_output=True, text=True, env=env
    )


def item_names(store) -> list:
    return [item["name"] for item in store.read_collection("items")]


# =============================================================================
# SECTION 1: Setup
# =============================================================================

@integration_test("Write config and seed the live store")
def test_setup():
    global WORK_DIR
    from homeregistry.auth import hash_token
    from homeregistry.config import Settings, save_config
    from homeregistry.storage import LiveStore

    WORK_DIR = tempfile.mkdtemp(prefix="homeregistry_integration_")
    settings = Settings(data_dir=str(Path(WORK_DIR) / "data"))
    settings.api.tokens = {hash_token(ADMIN_TOKEN): "admin"}
    save_config(settings, config_path())

    store = LiveStore(settings.database_path)
    for user_id, username, is_admin in ((ADMIN_ID, "admin", 1), (MEMBER_ID, "member", 0)):
        store.insert_record("users", {
            "id": user_id, "username": username, "full_name": username.title(),
            "password_hash": f"$argon2id$hash-of-{username}", "is_admin": is_admin,
        })
    store.insert_record("inventories", {"id": 1, "name": "Main House", "user_id": ADMIN_ID})
    store.insert_record("inventories", {"id": 2, "name": "Garage", "user_id": MEMBER_ID})
    for inventory_id, name in ((1, "Television"), (1, "Laptop"), (1, "Sofa"),
                               (2, "Drill"), (2, "Ladder")):
        store.insert_record("items", {"inventory_id": inventory_id, "name": name})

    return store.count("items") == 5 and store.count("inventories") == 2


# =============================================================================
# SECTION 2: Library Workflow
# =============================================================================

@integration_test("Create snapshot through BackupService")
def test_service_create():
    service = make_service()
    admin = service.identity.resolve("admin")
    entry = service.create(admin, description="integration baseline")
    return entry.kind == "manual" and service.catalog.exists(entry.name)


@integration_test("Restore undoes changes and leaves a safety snapshot")
def test_service_restore():
    service = make_service()
    admin = service.identity.resolve("admin")
    baseline = [e for e in service.list(admin) if e.kind == "manual"][-1]
    before = item_names(service.store)

    service.store.insert_record("items", {"inventory_id": 2, "name": "Wheelbarrow"})
    outcome = service.restore(admin, baseline.name)

    safety = service.catalog.read(outcome.safety_snapshot)
    return (
        item_names(service.store) == before
        and b"Wheelbarrow" in safety
        and outcome.total_records >= 9
    )


@integration_test("Ids after restore do not collide")
def test_no_id_collision():
    service = make_service()
    new_id = service.store.insert_record("items", {"inventory_id": 1, "name": "Lamp"})
    return new_id == 6


@integration_test("Non-administrators are refused")
def test_member_refused():
    from homeregistry.backup import AuthorizationError

    service = make_service()
    try:
        service.list(service.identity.resolve("member"))
    except AuthorizationError:
        return True
    return False


# =============================================================================
# SECTION 3: CLI Workflow
# =============================================================================

@integration_test("CLI: homeregistry --version")
def test_cli_version():
    from homeregistry import __version__

    result = run_cli("--version")
    return result.returncode == 0 and __version__ in result.stdout


@integration_test("CLI: homeregistry backup create / list --json")
def test_cli_create_list():
    result = run_cli("backup", "create", "-d", "from the CLI")
    if result.returncode != 0:
        return False
    listing = run_cli("backup", "list", "--json")
    entries = json.loads(listing.stdout)
    return listing.returncode == 0 and any(e["kind"] == "manual" for e in entries)


@integration_test("CLI: failed restore prints the recovery command")
def test_cli_failed_restore():
    broken = Path(WORK_DIR) / "orphans.json"
    service = make_service()
    snapshot = service.exporter.export()
    snapshot.data["items"].append({"id": 99, "inventory_id": 404, "name": "Orphan"})
    broken.write_bytes(snapshot.to_bytes())

    upload = run_cli("backup", "upload", str(broken))
    restore = run_cli("backup", "restore", "orphans.json", "--force")
    return (
        upload.returncode == 0
        and restore.returncode == 1
        and "homeregistry backup restore home_registry_auto_pre_restore_" in restore.stderr
    )


# =============================================================================
# SECTION 4: HTTP API Workflow
# =============================================================================

@integration_test("API: create, download, upload and restore over HTTP")
def test_api_round_trip():
    from homeregistry.api import BackupApiServer, BackupClient
    from homeregistry.auth import TokenAuthenticator
    from homeregistry.config import load_config

    settings = load_config(config_path())
    service = make_service()
    server = BackupApiServer(
        service, TokenAuthenticator(settings.api.tokens, service.identity), port=0
    )
    if not server.start():
        return False

    try:
        with BackupClient(server.get_url(), ADMIN_TOKEN, timeout=60) as client:
            entry = client.create_backup(description="over http")
            content = client.download_backup(entry["name"])
            uploaded = client.upload_backup(content, "copied_over_http.json")
            outcome = client.restore_backup(uploaded["name"])
            return (
                client.health()["status"] == "healthy"
                and outcome["state"] == "committed"
                and uploaded["name"] == "copied_over_http.json"
            )
    finally:
        server.stop()


@integration_test("API: wrong token is rejected with 401")
def test_api_rejects_token():
    from homeregistry.api import BackupApiServer, BackupClient
    from homeregistry.auth import TokenAuthenticator
    from homeregistry.backup import AuthorizationError

    service = make_service()
    server = BackupApiServer(service, TokenAuthenticator({}, service.identity), port=0)
    server.start()
    try:
        with BackupClient(server.get_url(), "wrong", timeout=60) as client:
            try:
                client.list_backups()
            except AuthorizationError as e:
                return not e.authenticated
            return False
    finally:
        server.stop()


# =============================================================================
# SECTION 5: Sealed Snapshots
# =============================================================================

@integration_test("Sealed snapshot hides secrets and restores with passphrase")
def test_sealed_snapshot():
    from homeregistry.backup import BackupService
    from homeregistry.config import load_config

    settings = load_config(config_path())
    settings.backup.seal_secrets = True
    settings.backup.seal_iterations = 10_000

    previous = os.environ.get("HOMEREGISTRY_BACKUP_PASSPHRASE")
    os.environ["HOMEREGISTRY_BACKUP_PASSPHRASE"] = "integration passphrase"
    try:
        service = BackupService.from_settings(settings)
        admin = service.identity.resolve("admin")
        entry = service.create(admin, description="sealed")
        raw = service.catalog.read(entry.name)
        service.restore(admin, entry.name)
    finally:
        if previous is None:
            del os.environ["HOMEREGISTRY_BACKUP_PASSPHRASE"]
        else:
            os.environ["HOMEREGISTRY_BACKUP_PASSPHRASE"] = previous

    users = service.store.read_collection("users")
    return b"hash-of-admin" not in raw and users[0]["password_hash"] == "$argon2id$hash-of-admin"


# =============================================================================
# CLEANUP
# =============================================================================

def cleanup():
    """Clean up test directories."""
    try:
        if WORK_DIR and Path(WORK_DIR).exists():
            shutil.rmtree(WORK_DIR)
    except OSError:
        pass


# =============================================================================
# MAIN
# =============================================================================

def main():
    print("\n" + "="*60)
    print("  HOME REGISTRY BACKUP INTEGRATION TEST")
    print("="*60)
    print(f"\nStarted: {datetime.now().isoformat()}")
    print(f"Python: {sys.version.split()[0]}")

    try:
        section("1. Setup")
        test_setup()

        section("2. Library Workflow")
        test_service_create()
        test_service_restore()
        test_no_id_collision()
        test_member_refused()

        section("3. CLI Workflow")
        test_cli_version()
        test_cli_create_list()
        test_cli_failed_restore()

        section("4. HTTP API Workflow")
        test_api_round_trip()
        test_api_rejects_token()

        section("5. Sealed Snapshots")
        test_sealed_snapshot()

    finally:
        cleanup()

    # Print summary
    section("TEST SUMMARY")

    total = RESULTS["passed"] + RESULTS["failed"]
    pass_rate = (RESULTS["passed"] / total * 100) if total > 0 else 0

    print(f"Total Tests: {total}")
    print(f"Passed:      {RESULTS['passed']}")
    print(f"Failed:      {RESULTS['failed']}")
    print(f"Pass Rate:   {pass_rate:.1f}%")

    if RESULTS["failed"] > 0:
        print("\nFailed Tests:")
        for test in RESULTS["tests"]:
            if test["status"] != "PASS":
                error = test.get("error", "")
                print(f"  - {test['name']}: {test['status']}" + (f" ({error})" if error else ""))

    print("\n" + "="*60)
    if RESULTS["failed"] == 0:
        print("  ALL TESTS PASSED!")
    else:
        print(f"  {RESULTS['failed']} TEST(S) FAILED")
    print("="*60 + "\n")

    return 0 if RESULTS["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
