#!/usr/bin/env python3
"""
Installation check for Directory Sync.

Confirms that the dependencies import, that the package modules load, and
that the core services work against a throwaway in-memory database.
"""

import sys
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("SQLAlchemy", "sqlalchemy"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "directory_sync.config",
        "directory_sync.database",
        "directory_sync.models",
        "directory_sync.store",
        "directory_sync.ldap_client",
        "directory_sync.reconciler",
        "directory_sync.credentials",
        "directory_sync.activity_log",
        "directory_sync.scheduler",
        "directory_sync.notifications",
        "directory_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    print("\n=== Functionality Validation ===")

    try:
        from directory_sync.database import create_db_engine, create_session_factory, init_db
        from directory_sync.store import UserStore
        from directory_sync.models import Role

        engine = create_db_engine({'url': 'sqlite://'})
        init_db(engine)
        with UserStore(create_session_factory(engine)()) as store:
            store.add_group_mapping('Installation Check', Role.USER)
            assert len(store.list_active_group_mappings()) == 1
        engine.dispose()
        print("  ✓ Local user store")

        from directory_sync.reconciler import build_desired_state
        from directory_sync.ldap_client import DirectoryMember
        from directory_sync.models import GroupMapping
        state = build_desired_state(
            [GroupMapping(group_name='Staff', mapped_role=Role.USER),
             GroupMapping(group_name='Admins', mapped_role=Role.ADMIN)],
            lambda name: [DirectoryMember('check')]
        )
        assert state.users['check'].role == Role.ADMIN
        print("  ✓ Role reconciliation")

        from directory_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0, exceptions=())
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
            return True
        print("  ✗ Help command failed")
        return False

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    print("Directory Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Configure the active_directory section and group_mappings in config.yaml")
        print("  2. Test with: python -m directory_sync.main --health-check")
        print("  3. Test email with: python -m directory_sync.main --test-email")
        print("  4. Run sync: python -m directory_sync.main")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
