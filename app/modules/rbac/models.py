# Supabase tables: rbac_permissions, rbac_roles, rbac_role_permissions,
# rbac_user_roles, rbac_user_permissions, profiles
# This file documents the expected database schema
# Actual operations are handled via the Supabase SDK in app/database/rbac_store.py

"""
Expected Supabase table structure:

rbac_permissions:
- id: uuid (primary key)
- resource: text (not null) - e.g., "knowledge_base", "documents", "*"
- action: text (not null) - e.g., "read", "publish", "*"
- description: text (nullable)
- created_at: timestamp (default: now())
- unique constraint on (resource, action)

rbac_roles:
- id: uuid (primary key)
- name: text (not null, unique) - e.g., "documents_admin", "marketing_restricted"
- description: text (nullable)
- created_at: timestamp (default: now())

rbac_role_permissions:
- role_id: uuid (foreign key to rbac_roles.id, on delete cascade)
- permission_id: uuid (foreign key to rbac_permissions.id, on delete cascade)
- effect: rbac_effect enum ('allow', 'deny'), not null
- primary key (role_id, permission_id)

rbac_user_roles:
- user_id: uuid (foreign key to profiles.id, on delete cascade)
- role_id: uuid (foreign key to rbac_roles.id, on delete cascade)
- primary key (user_id, role_id)

rbac_user_permissions:
- user_id: uuid (foreign key to profiles.id, on delete cascade)
- permission_id: uuid (foreign key to rbac_permissions.id, on delete cascade)
- effect: rbac_effect enum ('allow', 'deny'), not null
- primary key (user_id, permission_id)

profiles:
- id: uuid (primary key, references auth.users.id)
- email: text (nullable)
- full_name: text (nullable)
- created_at: timestamp (default: now())

Role replacement runs as one Postgres function so readers never observe an
empty role set between the delete and the insert:

    create or replace function rbac_replace_user_roles(p_user_id uuid, p_role_ids uuid[])
    returns setof rbac_user_roles
    language plpgsql
    security definer
    as $$
    begin
      perform 1 from profiles where id = p_user_id for update;
      delete from rbac_user_roles where user_id = p_user_id;
      insert into rbac_user_roles (user_id, role_id)
        select p_user_id, distinct_role from unnest(p_role_ids) as distinct_role
        group by distinct_role;
      return query select * from rbac_user_roles where user_id = p_user_id;
    end;
    $$;

The function body executes in a single transaction; a failing insert (unknown
role id) rolls the delete back as well.
"""

TABLE_PERMISSIONS = "rbac_permissions"
TABLE_ROLES = "rbac_roles"
TABLE_ROLE_PERMISSIONS = "rbac_role_permissions"
TABLE_USER_ROLES = "rbac_user_roles"
TABLE_USER_PERMISSIONS = "rbac_user_permissions"
TABLE_PROFILES = "profiles"
FN_REPLACE_USER_ROLES = "rbac_replace_user_roles"
