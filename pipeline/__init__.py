"""Pipeline application for the ODK form operations project.

This package groups the services that talk to KoboToolbox, GitHub and
OneDrive, the patient identifier helpers used to build external-select
lists, and the declared build targets that tie them together.  Each
entry point is exposed as a ``manage.py`` command so the pipeline can be
run step by step or as a whole with ``make_targets``.
"""
