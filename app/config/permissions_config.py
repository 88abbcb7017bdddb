"""
Permissions and Roles Configuration
This config defines the permission catalog for every hub module and the seed roles
with their allow/deny policy.
Used by the seed script to populate/update the rbac_* tables.
"""

# Define modules and their actions
MODULES = {
    "users": {
        "resource": "users",
        "actions": ["create", "read", "update", "delete", "invite"],
        "description": "User directory"
    },
    "forms": {
        "resource": "forms",
        "actions": ["create", "read", "update", "delete", "submit", "approve"],
        "description": "Request forms and approvals"
    },
    "knowledge_base": {
        "resource": "knowledge_base",
        "actions": ["create", "read", "update", "delete", "publish"],
        "description": "Knowledge base articles"
    },
    "newsletters": {
        "resource": "newsletters",
        "actions": ["create", "read", "update", "delete", "send"],
        "description": "Newsletter cycles"
    },
    "documents": {
        "resource": "documents",
        "actions": ["create", "read", "update", "delete", "share"],
        "description": "Document storage"
    },
    "marketing": {
        "resource": "marketing",
        "actions": ["create", "read", "update", "delete", "send"],
        "description": "Marketing campaigns"
    },
    "rbac": {
        "resource": "rbac",
        "actions": ["read", "manage", "assign"],
        "description": "Roles, permissions and user access"
    }
}

# Role definitions per module. "deny" lists actions the role explicitly forbids.
ROLE_TYPES = {
    "ADMIN": {
        "allow": ["create", "read", "update", "delete"],
        "deny": [],
        "description": "Full administrative access to the module"
    },
    "VIEWER": {
        "allow": ["read"],
        "deny": [],
        "description": "Read-only access to the module"
    },
    "RESTRICTED": {
        "allow": [],
        "deny": ["create", "update", "delete"],
        "description": "Blocks write access to the module regardless of other roles"
    }
}

# Descriptions for actions beyond plain CRUD
MODULE_SPECIFIC_PERMISSIONS = {
    "users": {
        "invite": "Invite new users to the hub"
    },
    "forms": {
        "submit": "Submit requests through a form",
        "approve": "Approve or reject submitted requests"
    },
    "knowledge_base": {
        "publish": "Publish articles to all staff"
    },
    "newsletters": {
        "send": "Send a newsletter cycle"
    },
    "documents": {
        "share": "Share documents outside the owning department"
    },
    "marketing": {
        "send": "Send campaigns to external recipients"
    },
    "rbac": {
        "read": "View roles, permissions and effective access",
        "manage": "Create, edit and delete roles and permissions",
        "assign": "Assign roles and per-user overrides"
    }
}


def get_permission_matrix():
    """
    Returns a dictionary with all permissions and the seed roles
    Format: {
        "permissions": [
            {"name": "users:create", "resource": "users", "action": "create", "description": "..."},
            ...
        ],
        "roles": [
            {
                "name": "users_admin",
                "description": "...",
                "permissions": {"users:create": "allow", "users:read": "allow", ...}
            },
            ...
        ]
    }
    """
    permissions = []
    roles = []

    for module_name, module_config in MODULES.items():
        resource = module_config["resource"]

        for action in module_config["actions"]:
            description = f"{action.capitalize()} {resource.replace('_', ' ')}"
            if action in MODULE_SPECIFIC_PERMISSIONS.get(module_name, {}):
                description = MODULE_SPECIFIC_PERMISSIONS[module_name][action]

            permissions.append({
                "name": f"{resource}:{action}",
                "resource": resource,
                "action": action,
                "description": description
            })

    for module_name, module_config in MODULES.items():
        resource = module_config["resource"]
        actions = module_config["actions"]

        for role_type, role_config in ROLE_TYPES.items():
            policy = {}
            for action in role_config["allow"]:
                if action in actions:
                    policy[f"{resource}:{action}"] = "allow"

            # Module admins also get the module's non-CRUD actions
            if role_type == "ADMIN":
                for action in actions:
                    policy.setdefault(f"{resource}:{action}", "allow")

            for action in role_config["deny"]:
                if action in actions:
                    policy[f"{resource}:{action}"] = "deny"

            if not policy:
                continue

            roles.append({
                "name": f"{resource}_{role_type.lower()}",
                "description": f"{role_config['description']} for {module_config['description']}",
                "permissions": dict(sorted(policy.items()))
            })

    return {
        "permissions": permissions,
        "roles": roles
    }


# Export the matrix for use in seed scripts
PERMISSION_MATRIX = get_permission_matrix()
