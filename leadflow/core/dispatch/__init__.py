# leadflow/core/dispatch/__init__.py
"""
Lead Dispatch & Rotation Engine.

- ``selector``      next closer for a team
- ``assignment``    one lead -> closer assignment with side effects
- ``rotation``      lineup reordering on duty-on and dispositions
- ``reminders``     appointment reminders and the 45-minute promotion
- ``orchestrator``  trigger reactions (never raise)
- ``rpc``           caller-invoked operations
- ``jobs``          outbox job handlers

Nothing here touches the database directly: every component receives an
``AsyncDispatchRepository`` and a ``Notifier``.
"""
