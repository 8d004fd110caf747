"""Management package for the pipeline commands.

Each ``manage.py`` command wraps one pipeline step (archiving Kobo form
versions, writing the patient list, publishing a release, ...).  The
``make_targets`` command runs the declared build targets as a whole.
"""
