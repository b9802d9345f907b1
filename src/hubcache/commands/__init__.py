"""Built-in CLI commands for hubcache.

* :mod:`~hubcache.commands.cache` -- ``download``, ``snapshot``, ``ls``,
  ``stats``, ``clear``, ``evict`` and ``verify``.
* :mod:`~hubcache.commands.config` -- the ``config`` group (``show``,
  ``set``, ``reset``).
"""
