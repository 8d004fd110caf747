"""Declared build targets for the form operations pipeline.

Each :class:`Target` is a named call whose keyword arguments are the values
of other targets.  :class:`Plan` keeps the targets in an explicit ordered
list, resolves the dependencies of the requested targets and evaluates each
target once per run.  A target with a ``pattern`` fans out over the mapping
produced by that dependency: the command runs once per entry and the
results are collected under the same keys.

There is no cache between runs.  Steps that must not repeat work (the form
archive) skip it themselves.
"""
from __future__ import annotations

import logging
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    name: str
    command: Callable[..., Any]
    deps: Sequence[str] = ()
    pattern: Optional[str] = None
    description: str = ''

    def __post_init__(self) -> None:
        if self.pattern is not None and self.pattern not in self.deps:
            raise ValueError(f'Target {self.name}: pattern {self.pattern!r} must be one of its deps.')

    def run(self, values: Mapping[str, Any]) -> Any:
        kwargs = {dep: values[dep] for dep in self.deps}
        if self.pattern is None:
            return self.command(**kwargs)
        branches = kwargs.pop(self.pattern)
        return {
            key: self.command(**{self.pattern: {key: value}}, **kwargs)
            for key, value in branches.items()
        }


@dataclass
class Plan:
    targets: List[Target] = field(default_factory=list)

    def __post_init__(self) -> None:
        seen = set()
        for target in self.targets:
            if target.name in seen:
                raise ValueError(f'Target {target.name} is declared twice.')
            seen.add(target.name)

    @property
    def names(self) -> List[str]:
        return [target.name for target in self.targets]

    def get(self, name: str) -> Target:
        for target in self.targets:
            if target.name == name:
                return target
        raise KeyError(f'Unknown target {name!r}.')

    def order(self, names: Optional[Iterable[str]] = None) -> List[Target]:
        """Return the requested targets and their dependencies, deps first."""

        requested = list(names) if names else self.names
        ordered: List[Target] = []
        done = set()
        visiting: List[str] = []

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = ' -> '.join(visiting[visiting.index(name):] + [name])
                raise ValueError(f'Dependency cycle between targets: {cycle}')
            target = self.get(name)
            visiting.append(name)
            for dep in target.deps:
                visit(dep)
            visiting.pop()
            done.add(name)
            ordered.append(target)

        for name in requested:
            visit(name)
        return ordered

    def make(self, names: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Evaluate the requested targets; returns every value computed."""

        values: Dict[str, Any] = {}
        for target in self.order(names):
            logger.info('Building target %s', target.name)
            values[target.name] = target.run(values)
        return values


# ---------------------------------------------------------------------------
# Study plan


def _enumerator_filter() -> List[str]:
    per_nurse = settings.PATIENT_LIST_PER_ENUMERATOR
    return [nurse for nurse in settings.PATIENT_LIST_ENUMERATORS for _ in range(per_nurse)]


def build_plan() -> Plan:
    """Declare the targets of the oncology facility study."""

    from .services import form_archive, kobo, onedrive, patients

    def patient_ids() -> List[str]:
        return patients.create_patient_id(
            n=settings.PATIENT_ID_COUNT,
            pattern='numeric',
            sequential=True,
            prefix=f'{date.today():%Y}',
            seed=settings.PATIENT_ID_SEED,
        )

    def patient_list(patient_ids):
        return patients.create_patient_list(
            ids=patient_ids,
            language=settings.PATIENT_LIST_LANGUAGE,
            choice_filter=_enumerator_filter(),
            choice_filter_label=settings.PATIENT_LIST_FILTER_LABEL,
        )

    def patient_list_search(patient_ids):
        return patients.create_patient_list(
            ids=patient_ids,
            language=settings.PATIENT_LIST_LANGUAGE,
            choice_filter=_enumerator_filter(),
            choice_filter_label=settings.PATIENT_LIST_FILTER_LABEL,
            name_key=True,
        )

    def patient_list_csv(patient_list_search):
        return patients.write_patient_list(patient_list_search)

    def kobo_assets():
        return kobo.kobo_asset_list()

    def form_uid(kind: str):
        def command(kobo_assets):
            return kobo.kobo_get_uid(kobo_assets, settings.KOBO_FORMS[kind])
        return command

    def version_urls(uid_target: str):
        def command(**values):
            return kobo.kobo_get_version_urls(kobo.kobo_asset_version_list(values[uid_target]))
        return command

    def archive(kind: str, urls_target: str):
        def command(**values):
            return form_archive.archive_form_version(
                values[urls_target],
                file_name=settings.KOBO_FORM_FILES[kind],
                form_title=settings.KOBO_FORMS[kind],
                directory=settings.FORMS_ARCHIVE_DIR / kind,
            )
        return command

    def release_forms():
        return onedrive.retrieve_release_forms()

    def pilot_patient_list():
        return patients.read_patient_list()

    targets = [
        Target('release_forms', release_forms, description='Forms and media staged from OneDrive'),
        Target('patient_ids', patient_ids, description='Sequential study patient identifiers'),
        Target('patient_list', patient_list, deps=['patient_ids']),
        Target('patient_list_search', patient_list_search, deps=['patient_ids']),
        Target('patient_list_csv', patient_list_csv, deps=['patient_list_search'],
               description='patient_list.csv in the release media folder'),
        Target('kobo_assets', kobo_assets, description='Assets visible to the Kobo token'),
    ]
    for kind in settings.KOBO_FORMS:
        uid_name = f'{kind}_form_uid'
        urls_name = f'{kind}_form_version_urls'
        targets.extend([
            Target(uid_name, form_uid(kind), deps=['kobo_assets']),
            Target(urls_name, version_urls(uid_name), deps=[uid_name]),
            Target(f'{kind}_form_archive', archive(kind, urls_name), deps=[urls_name], pattern=urls_name,
                   description=f'Archived deployed versions of the {kind} form'),
        ])
    targets.append(
        Target('pilot_patient_list', pilot_patient_list, description='Recoded pilot patient list from OneDrive'),
    )
    return Plan(targets)


__all__ = ['Plan', 'Target', 'build_plan']
