"""Command handlers.

Every handler is ``async def handle_<command>(ctx: CommandContext) -> Result``
and is dispatched by ``db_tools.cli`` through ``CommandAdapter``.
"""
