"""manage-permissions: application role management (PostgreSQL only).

Actions:
    create   Create the role (and optionally a login user that inherits it)
             and grant CRUD on every table and sequence in ``public``.
    update   Re-apply the grants, e.g. after new tables were added.
    revoke   Revoke every grant from the role.
    drop     Drop the role and everything it owns.
    show     List the role's table privileges.

Roles are cluster-wide, so the shadow rehearsal runs the statements in a
transaction that is always rolled back.
"""

from rich.table import Table

from db_tools.adapters.base import quote_ident
from db_tools.adapters.postgres import sql_literal
from db_tools.command import CommandContext, execute_planned
from db_tools.config.models import BackendKind
from db_tools.result import Err, ErrKind, Ok, Result
from db_tools.safety.operations import PlannedOperation, run_statements

DEFAULT_ROLE = "app_user"
ACTIONS = ("create", "update", "revoke", "drop", "show")

TABLE_PRIVILEGES = "SELECT, INSERT, UPDATE, DELETE"


class _Rehearsal(Exception):
    """Raised inside a rehearsal transaction to force its rollback."""


def grant_statements(role: str) -> list[str]:
    r = quote_ident(role)
    return [
        f"GRANT USAGE ON SCHEMA public TO {r}",
        f"GRANT {TABLE_PRIVILEGES} ON ALL TABLES IN SCHEMA public TO {r}",
        f"GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA public TO {r}",
        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT {TABLE_PRIVILEGES} ON TABLES TO {r}",
        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT USAGE, SELECT ON SEQUENCES TO {r}",
    ]


def revoke_statements(role: str) -> list[str]:
    r = quote_ident(role)
    return [
        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public REVOKE ALL ON TABLES FROM {r}",
        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public REVOKE ALL ON SEQUENCES FROM {r}",
        f"REVOKE ALL ON ALL TABLES IN SCHEMA public FROM {r}",
        f"REVOKE ALL ON ALL SEQUENCES IN SCHEMA public FROM {r}",
        f"REVOKE USAGE ON SCHEMA public FROM {r}",
    ]


def permission_statements(
    action: str,
    role: str,
    database: str,
    login_user: str | None = None,
    password: str | None = None,
) -> list[str]:
    """SQL for *action* on *role*."""
    r = quote_ident(role)
    if action == "create":
        statements = [f"CREATE ROLE {r} NOLOGIN", f"GRANT CONNECT ON DATABASE {quote_ident(database)} TO {r}"]
        statements += grant_statements(role)
        if login_user:
            login = f"CREATE ROLE {quote_ident(login_user)} LOGIN"
            if password:
                login += f" PASSWORD {sql_literal(password)}"
            statements += [login, f"GRANT {r} TO {quote_ident(login_user)}"]
        return statements
    if action == "update":
        return grant_statements(role)
    if action == "revoke":
        return revoke_statements(role)
    if action == "drop":
        return [f"DROP OWNED BY {r}", f"DROP ROLE {r}"]
    raise ValueError(f"Unknown action: {action}")


def _rehearse(statements: list[str]):
    async def apply(target) -> None:
        try:
            async with target.transaction() as tx:
                for statement in statements:
                    await tx.execute(statement)
                raise _Rehearsal
        except _Rehearsal:
            return

    return apply


async def _show(ctx: CommandContext, role: str) -> Result:
    privileges = await ctx.backend.role_privileges(role)
    if not privileges:
        return Ok({}, f'Role "{role}" has no table privileges')
    table = Table(title=f"Privileges of {role}")
    table.add_column("Table", style="cyan")
    table.add_column("Privileges")
    for name, granted in privileges.items():
        table.add_row(name, granted)
    ctx.console.print(table)
    return Ok(privileges)


async def handle_manage_permissions(ctx: CommandContext) -> Result:
    if ctx.backend.kind is not BackendKind.POSTGRES:
        return Err(ErrKind.VALIDATION, "manage-permissions is only available for PostgreSQL projects")

    action = ctx.option("action") or "show"
    role = ctx.option("role") or DEFAULT_ROLE
    exists = await ctx.backend.role_exists(role)

    if action == "show":
        if not exists:
            return Err(ErrKind.NOT_FOUND, f'Role "{role}" does not exist', ["Create it with: manage-permissions create"])
        return await _show(ctx, role)
    if action == "create" and exists:
        return Err(ErrKind.VALIDATION, f'Role "{role}" already exists', ["Use update to re-apply grants"])
    if action != "create" and not exists:
        return Err(ErrKind.NOT_FOUND, f'Role "{role}" does not exist')

    login_user = ctx.option("login_user") if action == "create" else None
    password = None
    if login_user:
        if await ctx.backend.role_exists(login_user):
            return Err(ErrKind.VALIDATION, f'Role "{login_user}" already exists')
        password = ctx.option("password")
        if password is None and ctx.prompter.interactive:
            password = ctx.prompter.secret(f"Password for {login_user}")

    statements = permission_statements(action, role, ctx.backend.database, login_user, password)
    display = [s if "PASSWORD" not in s else s.split(" PASSWORD ")[0] + " PASSWORD '***'" for s in statements]
    operation = PlannedOperation(
        "manage-permissions",
        {"action": action, "role": role},
        display,
        _rehearse(statements),
        modifies=[f"role {role}"],
    )
    return await execute_planned(ctx, operation, f"{action} permissions for {role}", live_apply=run_statements(statements))
