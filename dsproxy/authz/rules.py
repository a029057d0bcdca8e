from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dsproxy.authz.model import PolicyTuple
from dsproxy.k8s import RULE_GROUP, RULE_KIND, RULE_VERSION


class Permission(BaseModel):
    action: str
    # cluster/namespace, either side may be "*" (e.g. "cluster1/default", "*/kube-system")
    resource: str

    @field_validator("action", "resource")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class DataSourceRuleSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: Optional[str] = None
    group: Optional[str] = None
    datasource_id: str = Field(alias="dataSourceId")
    permissions: List[Permission] = Field(min_length=1)

    @field_validator("datasource_id")
    @classmethod
    def _datasource_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("dataSourceId must not be empty")
        return v

    @model_validator(mode="after")
    def _has_subject(self) -> "DataSourceRuleSpec":
        self.user = (self.user or "").strip() or None
        self.group = (self.group or "").strip() or None
        if not self.user and not self.group:
            raise ValueError("either user or group is required")
        return self

    def subjects(self) -> List[str]:
        return [s for s in (self.user, self.group) if s]

    def to_tuples(self) -> List[PolicyTuple]:
        """One tuple per permission per subject, in declaration order."""
        out: List[PolicyTuple] = []
        for perm in self.permissions:
            for sub in self.subjects():
                out.append(PolicyTuple(sub, self.datasource_id, perm.resource, perm.action))
        return out


class DataSourceRule(BaseModel):
    """A GrafanaDataSourceRule object as accepted by the rule-management API."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=f"{RULE_GROUP}/{RULE_VERSION}", alias="apiVersion")
    kind: str = RULE_KIND
    metadata: Dict[str, Any] = Field(default_factory=dict)
    spec: DataSourceRuleSpec

    @model_validator(mode="after")
    def _has_name(self) -> "DataSourceRule":
        if not (self.metadata.get("name") or self.metadata.get("generateName")):
            raise ValueError("metadata.name is required")
        return self

    def to_body(self, default_namespace: str) -> Dict[str, Any]:
        body = self.model_dump(by_alias=True, exclude_none=True)
        body["apiVersion"] = f"{RULE_GROUP}/{RULE_VERSION}"
        body["kind"] = RULE_KIND
        body["metadata"].setdefault("namespace", default_namespace)
        return body
