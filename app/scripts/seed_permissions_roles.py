"""
Seed Permissions and Roles Script
This script populates the rbac_permissions, rbac_roles and rbac_role_permissions
tables using the config. Safe to re-run: existing rows are updated in place.
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from app.config.permissions_config import PERMISSION_MATRIX
from app.database.rbac_store import RBACStore
from app.database.supabase_client import get_rbac_store
from app.modules.rbac.schemas import Effect
from typing import Dict
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def seed_permissions(store: RBACStore, matrix: Dict = PERMISSION_MATRIX) -> Dict[str, str]:
    """Seed permissions from config. Returns permission name -> id."""
    logger.info("Seeding permissions...")

    existing = {p.name: p for p in store.list_permissions()}
    ids = {}
    created_count = 0
    updated_count = 0

    for perm in matrix["permissions"]:
        current = existing.get(perm["name"])
        if current is not None:
            if current.description != perm["description"]:
                store.update_permission(current.id, {"description": perm["description"]})
                updated_count += 1
                logger.debug(f"Updated permission: {perm['name']}")
            ids[perm["name"]] = current.id
        else:
            created = store.create_permission(perm["resource"], perm["action"], perm["description"])
            ids[perm["name"]] = created.id
            created_count += 1
            logger.debug(f"Created permission: {perm['name']}")

    logger.info(f"Permissions seeded: {created_count} created, {updated_count} updated")
    return ids


def seed_roles(store: RBACStore, permission_ids: Dict[str, str], matrix: Dict = PERMISSION_MATRIX) -> int:
    """Seed roles and their allow/deny policy from config"""
    logger.info("Seeding roles...")

    existing = {r.name: r for r in store.list_roles()}
    created_count = 0
    updated_count = 0

    for role in matrix["roles"]:
        current = existing.get(role["name"])
        if current is not None:
            if current.description != role["description"]:
                store.update_role(current.id, {"description": role["description"]})
            role_id = current.id
            updated_count += 1
            logger.debug(f"Updated role: {role['name']}")
        else:
            role_id = store.create_role(role["name"], role["description"]).id
            created_count += 1
            logger.debug(f"Created role: {role['name']}")

        assign_permissions_to_role(store, role_id, role["name"], role["permissions"], permission_ids)

    logger.info(f"Roles seeded: {created_count} created, {updated_count} updated")
    return created_count + updated_count


def assign_permissions_to_role(store: RBACStore, role_id: str, role_name: str,
                               policy: Dict[str, str], permission_ids: Dict[str, str]) -> None:
    """Write the role's configured effects; bindings not in config are left alone"""
    for permission_name, effect in policy.items():
        permission_id = permission_ids.get(permission_name)
        if permission_id is None:
            logger.warning(f"Role {role_name}: permission {permission_name} not in catalog, skipping")
            continue
        store.upsert_role_permission(role_id, permission_id, Effect(effect))
    logger.debug(f"Role {role_name}: {len(policy)} bindings written")


def main():
    store = get_rbac_store()
    permission_ids = seed_permissions(store)
    seed_roles(store, permission_ids)
    logger.info("Seeding complete")


if __name__ == "__main__":
    main()
