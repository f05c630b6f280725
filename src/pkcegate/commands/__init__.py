"""Built-in CLI sub-commands for pkcegate.

* :mod:`~pkcegate.commands.flow` -- ``login`` (local redirect listener) and
  ``manual`` (paste the redirect URL back).
* :mod:`~pkcegate.commands.config` -- inspect client files and edit global
  settings.

Single commands are plain callbacks registered on the root app; groups
export a :class:`typer.Typer` sub-application.
"""
