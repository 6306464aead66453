# fieldops/core/__init__.py
"""
Dispatch core: transport- and storage-agnostic.

- ``assignment``: AssignmentEngine, the only writer of job status
- ``routing``: audience selection and bounded fan-out
- ``registration``: technician onboarding workflow
- ``sessions``: multi-step chat input state
- ``lifecycle``: job creation, approval gating, admin decisions
- ``scheduler``: reminders, daily summary, session cleanup
- ``bot``: chat command / callback front end

Core modules depend only on ``ports`` and never read ``fieldops.config``.
"""
