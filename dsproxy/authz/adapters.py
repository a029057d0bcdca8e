"""
Policy sources.

- FileAdapter: `policy.csv` next to `model.conf`; readable and writable.
- KubernetesAdapter: GrafanaDataSourceRule objects; read-only.
"""
from __future__ import annotations

import csv
import logging
import os
import tempfile
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from pydantic import ValidationError

from dsproxy.authz.model import DEFAULT_MODEL, PolicyModel, PolicySet, PolicyTuple, RoleLink
from dsproxy.authz.rules import DataSourceRuleSpec
from dsproxy.k8s import RuleClient

logger = logging.getLogger(__name__)

READ_ONLY_MESSAGE = "not implemented: use the Kubernetes API (GrafanaDataSourceRule objects) to manage rules"


@runtime_checkable
class PolicyAdapter(Protocol):
    def load_policy(self, model: PolicyModel) -> PolicySet: ...

    def save_policy(self, policy: PolicySet, model: PolicyModel = DEFAULT_MODEL) -> None: ...

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None: ...

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None: ...

    def remove_filtered_policy(self, sec: str, ptype: str, field_index: int, *field_values: str) -> None: ...


def parse_policy_rows(text: str) -> List[Tuple[str, ...]]:
    """Split policy text into rows: (ptype, field, ...). Comments and blanks dropped."""
    rows: List[Tuple[str, ...]] = []
    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        for record in csv.reader([stripped], skipinitialspace=True):
            fields = tuple(f.strip() for f in record)
            if fields:
                rows.append(fields)
    return rows


def policy_set_from_rows(rows: Sequence[Tuple[str, ...]], model: PolicyModel) -> PolicySet:
    policies: List[PolicyTuple] = []
    roles: List[RoleLink] = []
    for row in rows:
        ptype, fields = row[0], tuple(row[1:])
        if any(not f for f in fields):
            logger.warning("Skipping policy line with empty field: %s", ", ".join(row))
            continue
        if ptype == "p":
            try:
                policies.append(model.tuple_from_fields(fields))
            except ValueError as e:
                logger.warning("Skipping malformed p line (%s): %s", str(e), ", ".join(row))
        elif ptype == "g":
            if len(fields) != 2:
                logger.warning("Skipping malformed g line: %s", ", ".join(row))
                continue
            roles.append(RoleLink(member=fields[0], group=fields[1]))
        else:
            logger.warning("Skipping policy line with unknown type %r", ptype)
    return PolicySet(policies=tuple(policies), roles=tuple(roles))


def _format_row(row: Sequence[str]) -> str:
    out: List[str] = []
    for f in row:
        if "," in f or '"' in f:
            f = '"' + f.replace('"', '""') + '"'
        out.append(f)
    return ", ".join(out)


class FileAdapter:
    def __init__(self, path: str) -> None:
        self.path = path

    def _read_rows(self) -> List[Tuple[str, ...]]:
        with open(self.path, "r", encoding="utf-8") as f:
            return parse_policy_rows(f.read())

    def _write_rows(self, rows: Sequence[Sequence[str]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        # Write-then-rename so readers (and the watcher) never see a half-written file.
        fd, tmp = tempfile.mkstemp(prefix=".policy-", suffix=".csv", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for row in rows:
                    f.write(_format_row(row) + "\n")
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def load_policy(self, model: PolicyModel) -> PolicySet:
        return policy_set_from_rows(self._read_rows(), model)

    def save_policy(self, policy: PolicySet, model: PolicyModel = DEFAULT_MODEL) -> None:
        rows: List[Tuple[str, ...]] = [("p", *model.fields_from_tuple(p)) for p in policy.policies]
        rows.extend(("g", link.member, link.group) for link in policy.roles)
        self._write_rows(rows)

    def _rows_or_empty(self) -> List[Tuple[str, ...]]:
        try:
            return self._read_rows()
        except FileNotFoundError:
            return []

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        row = (ptype, *[str(f).strip() for f in rule])
        rows = self._rows_or_empty()
        if row in rows:
            return
        rows.append(row)
        self._write_rows(rows)

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        row = (ptype, *[str(f).strip() for f in rule])
        rows = self._rows_or_empty()
        kept = [r for r in rows if r != row]
        if len(kept) != len(rows):
            self._write_rows(kept)

    def remove_filtered_policy(self, sec: str, ptype: str, field_index: int, *field_values: str) -> None:
        def matches(row: Tuple[str, ...]) -> bool:
            if row[0] != ptype:
                return False
            fields = row[1:]
            for offset, value in enumerate(field_values):
                if not value:
                    continue
                idx = field_index + offset
                if idx >= len(fields) or fields[idx] != value:
                    return False
            return True

        rows = self._rows_or_empty()
        kept = [r for r in rows if not matches(r)]
        if len(kept) != len(rows):
            self._write_rows(kept)


class KubernetesAdapter:
    """
    Projects GrafanaDataSourceRule objects into policy tuples.

    Read-only: rules are owned by the cluster API, so every mutating call raises
    NotImplementedError.
    """

    def __init__(self, client: RuleClient) -> None:
        self.client = client

    def load_policy(self, model: Optional[PolicyModel] = None) -> PolicySet:
        items = self.client.list_rules()
        policies: List[PolicyTuple] = []
        for item in items:
            meta = item.get("metadata") or {}
            name = f"{meta.get('namespace') or '-'}/{meta.get('name') or '?'}"
            try:
                spec = DataSourceRuleSpec.model_validate(item.get("spec") or {})
            except ValidationError as e:
                logger.warning("Skipping rule %s: %s", name, e.errors()[0].get("msg") if e.errors() else str(e))
                continue
            policies.extend(spec.to_tuples())
        return PolicySet(policies=tuple(policies))

    def save_policy(self, policy: PolicySet, model: PolicyModel = DEFAULT_MODEL) -> None:
        raise NotImplementedError(READ_ONLY_MESSAGE)

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        raise NotImplementedError(READ_ONLY_MESSAGE)

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        raise NotImplementedError(READ_ONLY_MESSAGE)

    def remove_filtered_policy(self, sec: str, ptype: str, field_index: int, *field_values: str) -> None:
        raise NotImplementedError(READ_ONLY_MESSAGE)
