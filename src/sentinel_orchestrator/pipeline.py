"""Stage pipeline orchestrator.

Runs the deployment as strictly sequential stages:

    PreflightProbe -> Infrastructure -> ResponseAutomations -> Content
        -> FinalizeAutomationRoles

PROBE BEFORE WRITE:
PreflightProbe locates the workspace by correlation tag and probes every
known setting and connector. Anything that already exists is flagged so
Infrastructure neither redeploys it through the template nor writes it again.

REDUCED-SCOPE RETRY:
A workspace onboarded to the unified security portal rejects data connector
changes with "primary workspace management" errors. When Infrastructure fails
with that signature and the failure is attributable to data connectors, the
stage is re-run once with connectors forced off. A second failure is fatal.

FAILURE SCOPE:
- Preflight and Infrastructure failures are fatal: later stages are skipped
- Any other stage failure aborts that stage only (partial failure)
- Caller abort is honoured between stages, never inside one

Stage outputs are typed dataclasses keyed by stage name; a stage reads what
earlier stages computed rather than re-deriving it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError

from .automation import PlaybookResult, ResponseAutomationDeployer, TemplatePlaybookDeployer
from .classifier import ReconcileStatus
from .client import (
    RemoteResourceClient,
    ResourceReadError,
    TransportError,
    run_blocking,
)
from .config import Config, SettingKind
from .deployments import TemplateDeployer
from .models import DeploymentSpec
from .principals import (
    BindingOutcome,
    DirectoryClient,
    PrincipalBinding,
    PrincipalDiscovery,
    PrincipalLookup,
    RoleBinder,
    remediation_hint,
    resolve_role_id,
)
from .reconciler import ConditionalUpsertReconciler, DesiredSetting, ReconcileOutcome
from .resource_graph import CORRELATION_TAG, WorkspaceLocator
from .rules import BulkRuleDeployer, ManifestDeploymentSummary, ManifestError, ManifestFetcher
from .settings import build_desired_settings, catalog
from .spec_loader import SpecLoadError, load_template
from .workbooks import WorkbookPublisher

logger = logging.getLogger(__name__)

# Failure signature of a workspace whose connectors are managed by the unified portal
CONNECTOR_CONFLICT_PATTERN = re.compile(r"primary workspace management", re.IGNORECASE)
CONNECTOR_ATTRIBUTION_PATTERN = re.compile(r"data ?connectors?", re.IGNORECASE)

# Template output naming the deployed workspace
WORKSPACE_ID_OUTPUT = "workspaceResourceId"

AUTOMATION_BINDING_PURPOSE = "automation-rules"
PLAYBOOK_BINDING_PURPOSE = "playbook-identity"

# Sequential requests per blocking call: read then write, app id then display name
RECONCILE_REQUESTS = 2
DISCOVERY_REQUESTS = 2


class StageName(str, Enum):
    """Pipeline stages in execution order."""

    PREFLIGHT_PROBE = "PreflightProbe"
    INFRASTRUCTURE = "Infrastructure"
    RESPONSE_AUTOMATIONS = "ResponseAutomations"
    CONTENT = "Content"
    FINALIZE_AUTOMATION_ROLES = "FinalizeAutomationRoles"


class StageStatus(str, Enum):
    """Terminal status of one stage."""

    SUCCEEDED = "Succeeded"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    ABORTED = "Aborted"


class FinalOutcome(str, Enum):
    """Overall pipeline outcome."""

    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    FATAL = "Fatal"


class RetryPolicy(str, Enum):
    """Stage-level retry policy."""

    NONE = "none"
    RETRY_ONCE_WITHOUT_CONNECTORS = "retryOnceWithoutConnectors"


class StageFailedError(Exception):
    """Raised by a stage handler when the stage cannot complete.

    Attributes:
        setting_kind: Kind of the setting whose reconcile failed, if any.
        output: Partial stage output worth keeping in the result.
        retried: Whether the stage had already been retried.
    """

    def __init__(
        self,
        message: str,
        *,
        setting_kind: SettingKind | None = None,
        output: Any = None,
        retried: bool = False,
    ) -> None:
        super().__init__(message)
        self.setting_kind = setting_kind
        self.output = output
        self.retried = retried


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class StageDefinition:
    """One stage of a plan.

    Attributes:
        name: Stage name.
        requires: Stages whose outputs this stage consumes.
        gate: Predicate over the deployment spec; False skips the stage.
        retry: Stage-level retry policy.
        critical: A failure aborts the rest of the pipeline.
    """

    name: StageName
    requires: tuple[StageName, ...] = ()
    gate: Callable[[DeploymentSpec], bool] | None = None
    retry: RetryPolicy = RetryPolicy.NONE
    critical: bool = False


@dataclass(frozen=True)
class StagePlan:
    """Ordered stages of a pipeline run."""

    stages: tuple[StageDefinition, ...]

    def __post_init__(self) -> None:
        seen: set[StageName] = set()
        for stage in self.stages:
            missing = [r.value for r in stage.requires if r not in seen]
            if missing:
                raise ValueError(f"Stage {stage.name.value} requires earlier stages {missing}")
            if stage.name in seen:
                raise ValueError(f"Stage {stage.name.value} appears twice")
            seen.add(stage.name)

    @classmethod
    def full(cls) -> StagePlan:
        return cls(
            stages=(
                StageDefinition(StageName.PREFLIGHT_PROBE, critical=True),
                StageDefinition(
                    StageName.INFRASTRUCTURE,
                    requires=(StageName.PREFLIGHT_PROBE,),
                    retry=RetryPolicy.RETRY_ONCE_WITHOUT_CONNECTORS,
                    critical=True,
                ),
                StageDefinition(
                    StageName.RESPONSE_AUTOMATIONS,
                    requires=(StageName.INFRASTRUCTURE,),
                    gate=lambda spec: bool(spec.automation.playbooks),
                ),
                StageDefinition(
                    StageName.CONTENT,
                    requires=(StageName.INFRASTRUCTURE,),
                    gate=lambda spec: bool(spec.manifest_url or spec.workbooks),
                ),
                StageDefinition(
                    StageName.FINALIZE_AUTOMATION_ROLES,
                    requires=(StageName.PREFLIGHT_PROBE,),
                ),
            )
        )

    @classmethod
    def finalize_only(cls) -> StagePlan:
        return cls(
            stages=(
                StageDefinition(StageName.PREFLIGHT_PROBE, critical=True),
                StageDefinition(
                    StageName.FINALIZE_AUTOMATION_ROLES,
                    requires=(StageName.PREFLIGHT_PROBE,),
                ),
            )
        )


# =============================================================================
# Stage outputs
# =============================================================================


@dataclass(frozen=True)
class PreflightOutput:
    """What exists before anything is written."""

    workspace_id: str
    workspace_located: bool
    existing_paths: frozenset[str] = frozenset()


@dataclass(frozen=True)
class InfrastructureOutput:
    workspace_id: str
    template_outputs: dict[str, Any]
    setting_outcomes: list[ReconcileOutcome]
    data_connectors_deployed: bool
    principal: PrincipalLookup
    binding_outcomes: list[BindingOutcome]
    retried: bool = False


@dataclass(frozen=True)
class ResponseAutomationsOutput:
    playbooks: list[PlaybookResult]
    binding_outcomes: list[BindingOutcome]


@dataclass(frozen=True)
class ContentOutput:
    manifest_summary: ManifestDeploymentSummary | None
    workbook_outcomes: list[ReconcileOutcome]


@dataclass(frozen=True)
class FinalizeOutput:
    principal: PrincipalLookup
    binding_outcomes: list[BindingOutcome]
    setting_outcomes: list[ReconcileOutcome]


# =============================================================================
# Results
# =============================================================================


@dataclass
class StageResult:
    """Record of one stage execution."""

    name: StageName
    status: StageStatus
    retried: bool = False
    detail: str = ""
    output: Any = None
    duration_seconds: float = 0.0


@dataclass
class PipelineResult:
    """Aggregated result handed back to the caller."""

    stage_results: list[StageResult] = field(default_factory=list)
    manifest_summary: ManifestDeploymentSummary | None = None
    final_outcome: FinalOutcome = FinalOutcome.SUCCESS

    def stage(self, name: StageName) -> StageResult | None:
        for result in self.stage_results:
            if result.name == name:
                return result
        return None

    @property
    def success(self) -> bool:
        return self.final_outcome == FinalOutcome.SUCCESS


def resource_group_id_of(resource_id: str) -> str:
    """Resource group ID containing an ARM resource."""
    match = re.match(r"^(/subscriptions/[^/]+/resourceGroups/[^/]+)", resource_id, re.IGNORECASE)
    if not match:
        raise ValueError(f"Not a resource-group scoped resource ID: {resource_id}")
    return match.group(1)


def is_connector_conflict(error: StageFailedError) -> bool:
    """True when a failure carries the primary-workspace signature and involves connectors."""
    message = str(error)
    if not CONNECTOR_CONFLICT_PATTERN.search(message):
        return False
    return error.setting_kind == SettingKind.DATA_CONNECTOR or bool(
        CONNECTOR_ATTRIBUTION_PATTERN.search(message)
    )


# =============================================================================
# Orchestrator
# =============================================================================

StageHandler = Callable[[DeploymentSpec, dict[StageName, Any], StageDefinition], Awaitable[Any]]


class StagePipelineOrchestrator:
    """Runs a StagePlan against one deployment spec."""

    def __init__(
        self,
        config: Config,
        *,
        resource_client: RemoteResourceClient,
        reconciler: ConditionalUpsertReconciler,
        discovery: PrincipalDiscovery,
        role_binder: RoleBinder,
        rule_deployer: BulkRuleDeployer,
        locator: WorkspaceLocator | None = None,
        template_deployer: TemplateDeployer | None = None,
        playbook_deployer: ResponseAutomationDeployer | None = None,
        workbook_publisher: WorkbookPublisher | None = None,
    ) -> None:
        self._config = config
        self._client = resource_client
        self._reconciler = reconciler
        self._discovery = discovery
        self._binder = role_binder
        self._rules = rule_deployer
        self._locator = locator
        self._template_deployer = template_deployer
        self._playbooks = playbook_deployer
        self._workbooks = workbook_publisher
        self._abort = asyncio.Event()
        self._handlers: dict[StageName, StageHandler] = {
            StageName.PREFLIGHT_PROBE: self._preflight_probe,
            StageName.INFRASTRUCTURE: self._infrastructure_with_retry,
            StageName.RESPONSE_AUTOMATIONS: self._response_automations,
            StageName.CONTENT: self._content,
            StageName.FINALIZE_AUTOMATION_ROLES: self._finalize_automation_roles,
        }

    @classmethod
    def from_credential(
        cls, credential: TokenCredential, config: Config
    ) -> StagePipelineOrchestrator:
        """Wire the default collaborators around one shared credential."""
        timeout = config.request_timeout_seconds
        client = RemoteResourceClient(credential, timeout_seconds=timeout)
        reconciler = ConditionalUpsertReconciler(client)
        template_deployer = TemplateDeployer(credential, config)
        return cls(
            config,
            resource_client=client,
            reconciler=reconciler,
            discovery=PrincipalDiscovery(DirectoryClient(credential, timeout_seconds=timeout)),
            role_binder=RoleBinder(client),
            rule_deployer=BulkRuleDeployer(
                client,
                ManifestFetcher(timeout_seconds=timeout),
                max_workers=config.max_rule_workers,
                # probe + create
                timeout_seconds=timeout * 2,
            ),
            locator=WorkspaceLocator(credential, config),
            template_deployer=template_deployer,
            playbook_deployer=TemplatePlaybookDeployer(config.templates_dir, template_deployer),
            workbook_publisher=WorkbookPublisher(reconciler, config.templates_dir, config.location),
        )

    def abort(self) -> None:
        """Request an abort; takes effect before the next stage starts."""
        logger.warning("Pipeline abort requested")
        self._abort.set()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    async def run(self, spec: DeploymentSpec, plan: StagePlan | None = None) -> PipelineResult:
        """Run every stage of the plan in order."""
        plan = plan or StagePlan.full()
        result = PipelineResult()
        outputs: dict[StageName, Any] = {}
        fatal_stage: StageName | None = None

        logger.info(
            "Pipeline starting",
            extra={
                "correlation_id": spec.correlation_id,
                "stages": [s.name.value for s in plan.stages],
            },
        )

        for stage in plan.stages:
            if self._abort.is_set():
                result.stage_results.append(
                    StageResult(stage.name, StageStatus.ABORTED, detail="Aborted by caller")
                )
                continue

            if fatal_stage is not None:
                result.stage_results.append(
                    StageResult(
                        stage.name,
                        StageStatus.SKIPPED,
                        detail=f"Not run after fatal {fatal_stage.value} failure",
                    )
                )
                continue

            missing = [r.value for r in stage.requires if r not in outputs]
            if missing:
                result.stage_results.append(
                    StageResult(
                        stage.name, StageStatus.SKIPPED, detail=f"Missing inputs from {missing}"
                    )
                )
                continue

            if stage.gate is not None and not stage.gate(spec):
                result.stage_results.append(
                    StageResult(stage.name, StageStatus.SKIPPED, detail="Gate not satisfied")
                )
                continue

            stage_result = await self._run_stage(spec, stage, outputs)
            result.stage_results.append(stage_result)

            if stage_result.status == StageStatus.SUCCEEDED:
                outputs[stage.name] = stage_result.output
                if isinstance(stage_result.output, ContentOutput):
                    result.manifest_summary = stage_result.output.manifest_summary
            elif stage.critical:
                fatal_stage = stage.name

        result.final_outcome = self._final_outcome(plan, result)
        logger.info(
            "Pipeline complete",
            extra={
                "correlation_id": spec.correlation_id,
                "final_outcome": result.final_outcome.value,
                "stages": {r.name.value: r.status.value for r in result.stage_results},
            },
        )
        return result

    async def _run_stage(
        self,
        spec: DeploymentSpec,
        stage: StageDefinition,
        outputs: dict[StageName, Any],
    ) -> StageResult:
        logger.info("Stage starting", extra={"stage": stage.name.value})
        start_time = time.monotonic()
        handler = self._handlers[stage.name]

        try:
            output = await handler(spec, outputs, stage)
        except StageFailedError as e:
            status, detail, output, retried = StageStatus.FAILED, str(e), e.output, e.retried
        except (ManifestError, SpecLoadError, TransportError, AzureError) as e:
            status, detail, output, retried = StageStatus.FAILED, str(e), None, False
        else:
            status, detail = StageStatus.SUCCEEDED, ""
            retried = bool(getattr(output, "retried", False))

        duration = time.monotonic() - start_time
        extra = {
            "stage": stage.name.value,
            "status": status.value,
            "retried": retried,
            "duration_seconds": round(duration, 2),
        }
        if status == StageStatus.FAILED:
            logger.error("Stage failed", extra={**extra, "error": detail})
        else:
            logger.info("Stage complete", extra=extra)

        return StageResult(stage.name, status, retried, detail, output, duration)

    @staticmethod
    def _final_outcome(plan: StagePlan, result: PipelineResult) -> FinalOutcome:
        critical = {s.name for s in plan.stages if s.critical}
        statuses = [(r.name, r.status) for r in result.stage_results]
        if any(status == StageStatus.FAILED and name in critical for name, status in statuses):
            return FinalOutcome.FATAL
        if any(status in (StageStatus.FAILED, StageStatus.ABORTED) for _, status in statuses):
            return FinalOutcome.PARTIAL_FAILURE
        return FinalOutcome.SUCCESS

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _blocking(
        self, func: Callable[[], Any], operation_name: str, requests: int = 1
    ) -> Any:
        """Run a blocking call with one request timeout per sequential request it makes."""
        timeout = self._config.request_timeout_seconds * requests
        return await run_blocking(func, timeout, operation_name)

    async def _reconcile(self, setting: DesiredSetting) -> ReconcileOutcome | None:
        return await self._blocking(
            lambda: self._reconciler.reconcile(setting),
            f"Reconcile {setting.kind.value}",
            requests=RECONCILE_REQUESTS,
        )

    async def _discover(self, spec: DeploymentSpec) -> PrincipalLookup:
        return await self._blocking(
            lambda: self._discovery.discover(spec.overrides.principal_id),
            "Principal discovery",
            requests=DISCOVERY_REQUESTS,
        )

    @staticmethod
    def _role_id(role: str) -> str:
        try:
            return resolve_role_id(role)
        except ValueError as e:
            raise StageFailedError(str(e)) from e

    async def _bind_automation_role(
        self,
        spec: DeploymentSpec,
        principal: PrincipalLookup,
        workspace_id: str,
    ) -> list[BindingOutcome]:
        role_id = self._role_id(spec.overrides.automation_role)
        scope = resource_group_id_of(workspace_id)
        if not principal.found:
            logger.warning(
                "Automation role not bound: principal not found",
                extra={"remediation": remediation_hint(role_id, scope)},
            )
            return []
        binding = PrincipalBinding(
            principal_id=str(principal.principal_id),
            role_id=role_id,
            scope=scope,
            purpose=AUTOMATION_BINDING_PURPOSE,
        )
        return await self._binder.ensure_all(
            [binding],
            max_workers=1,
            timeout_seconds=self._config.request_timeout_seconds * 2,
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _preflight_probe(
        self,
        spec: DeploymentSpec,
        outputs: dict[StageName, Any],
        stage: StageDefinition,
    ) -> PreflightOutput:
        located = None
        if self._locator is not None:
            located = await self._locator.locate(spec.correlation_id)

        if located is not None:
            workspace_id = located.resource_id
        else:
            workspace_id = spec.workspace_resource_id(
                self._config.subscription_id, self._config.resource_group_name
            )

        existing: set[str] = set()
        for entry in catalog(spec, workspace_id):
            if not entry.enabled:
                continue
            try:
                state = await self._blocking(
                    lambda ref=entry.ref: self._client.get(ref), f"Probe {entry.kind.value}"
                )
            except ResourceReadError as e:
                logger.warning(
                    "Probe refused, treating setting as absent",
                    extra={"resource": entry.ref.path, "status_code": e.status_code},
                )
                continue
            if state.exists:
                existing.add(entry.ref.path)

        logger.info(
            "Preflight probe complete",
            extra={
                "workspace_id": workspace_id,
                "workspace_located": located is not None,
                "existing": sorted(existing),
            },
        )
        return PreflightOutput(
            workspace_id=workspace_id,
            workspace_located=located is not None,
            existing_paths=frozenset(existing),
        )

    async def _infrastructure_with_retry(
        self,
        spec: DeploymentSpec,
        outputs: dict[StageName, Any],
        stage: StageDefinition,
    ) -> InfrastructureOutput:
        deploy_connectors = spec.overrides.deploy_data_connectors
        try:
            return await self._infrastructure(spec, outputs, deploy_connectors)
        except StageFailedError as e:
            if not (
                stage.retry == RetryPolicy.RETRY_ONCE_WITHOUT_CONNECTORS
                and deploy_connectors
                and is_connector_conflict(e)
            ):
                raise
            logger.warning(
                "Data connectors rejected by primary workspace management, retrying without them",
                extra={"stage": stage.name.value, "error": str(e)},
            )

        try:
            output = await self._infrastructure(spec, outputs, deploy_connectors=False)
        except StageFailedError as e:
            raise StageFailedError(
                f"Retry without data connectors failed: {e}",
                setting_kind=e.setting_kind,
                output=e.output,
                retried=True,
            ) from e
        return InfrastructureOutput(
            workspace_id=output.workspace_id,
            template_outputs=output.template_outputs,
            setting_outcomes=output.setting_outcomes,
            data_connectors_deployed=False,
            principal=output.principal,
            binding_outcomes=output.binding_outcomes,
            retried=True,
        )

    async def _infrastructure(
        self,
        spec: DeploymentSpec,
        outputs: dict[StageName, Any],
        deploy_connectors: bool,
    ) -> InfrastructureOutput:
        preflight: PreflightOutput = outputs[StageName.PREFLIGHT_PROBE]
        workspace_id = preflight.workspace_id
        template_outputs: dict[str, Any] = {}

        if spec.infrastructure_template and self._template_deployer is not None:
            template = load_template(self._config.templates_dir, spec.infrastructure_template)
            parameters = self._template_parameters(spec, preflight, deploy_connectors)
            try:
                deployment = await self._template_deployer.deploy(
                    template,
                    parameters,
                    label=f"infra-{spec.correlation_id}",
                    resource_group_name=spec.workspace.resource_group,
                )
            except HttpResponseError as e:
                raise StageFailedError(f"Infrastructure template deployment failed: {e}") from e
            template_outputs = deployment.outputs
            workspace_id = str(template_outputs.get(WORKSPACE_ID_OUTPUT) or workspace_id)

        settings = build_desired_settings(
            spec,
            workspace_id,
            preflight.existing_paths,
            deploy_data_connectors=deploy_connectors,
        )
        setting_outcomes: list[ReconcileOutcome] = []
        for setting in settings:
            outcome = await self._reconcile(setting)
            if outcome is None:
                continue
            setting_outcomes.append(outcome)
            if outcome.failed:
                raise StageFailedError(
                    f"{setting.kind.value} reconcile failed: {outcome.detail}",
                    setting_kind=setting.kind,
                )

        principal = await self._discover(spec)
        bindings = await self._bind_automation_role(spec, principal, workspace_id)

        return InfrastructureOutput(
            workspace_id=workspace_id,
            template_outputs=template_outputs,
            setting_outcomes=setting_outcomes,
            data_connectors_deployed=deploy_connectors and bool(spec.settings.data_connectors),
            principal=principal,
            binding_outcomes=bindings,
        )

    def _template_parameters(
        self,
        spec: DeploymentSpec,
        preflight: PreflightOutput,
        deploy_connectors: bool,
    ) -> dict[str, Any]:
        """Decision flags and identity values offered to the template."""
        parameters: dict[str, Any] = {
            "workspaceName": spec.workspace.name,
            "location": self._config.location,
            "correlationId": spec.correlation_id,
            "tags": {**spec.tags, CORRELATION_TAG: spec.correlation_id},
            "deployDataConnectors": deploy_connectors,
        }
        entries = catalog(spec, preflight.workspace_id)
        for kind in SettingKind:
            paths = [e.ref.path for e in entries if e.kind == kind]
            parameters[f"skip{kind.value}"] = bool(paths) and all(
                p in preflight.existing_paths for p in paths
            )
        parameters.update(spec.template_parameters)
        return parameters

    async def _response_automations(
        self,
        spec: DeploymentSpec,
        outputs: dict[StageName, Any],
        stage: StageDefinition,
    ) -> ResponseAutomationsOutput:
        if self._playbooks is None:
            raise StageFailedError("No response automation deployer configured")

        infrastructure: InfrastructureOutput = outputs[StageName.INFRASTRUCTURE]
        resource_group_id = resource_group_id_of(infrastructure.workspace_id)
        resource_group_name = resource_group_id.rsplit("/", 1)[-1]

        playbooks = await self._playbooks.deploy(
            resource_group_name,
            list(spec.automation.playbooks),
            {
                "workspaceResourceId": infrastructure.workspace_id,
                "workspaceName": spec.workspace.name,
                "location": self._config.location,
            },
        )

        bindings: list[BindingOutcome] = []
        if spec.automation.bind_identities:
            role_id = self._role_id(spec.overrides.playbook_role)
            desired = [
                PrincipalBinding(
                    principal_id=p.principal_id,
                    role_id=role_id,
                    scope=resource_group_id,
                    purpose=PLAYBOOK_BINDING_PURPOSE,
                )
                for p in playbooks
                if p.success and p.principal_id
            ]
            bindings = await self._binder.ensure_all(
                desired,
                max_workers=self._config.max_rule_workers,
                timeout_seconds=self._config.request_timeout_seconds * 2,
            )

        output = ResponseAutomationsOutput(playbooks=playbooks, binding_outcomes=bindings)
        failed = [p.name for p in playbooks if not p.success]
        failed_bindings = [b.binding.principal_id for b in bindings if b.failed]
        if failed or failed_bindings:
            raise StageFailedError(
                f"Playbooks failed: {failed}; identity bindings failed: {failed_bindings}",
                output=output,
            )
        return output

    async def _content(
        self,
        spec: DeploymentSpec,
        outputs: dict[StageName, Any],
        stage: StageDefinition,
    ) -> ContentOutput:
        infrastructure: InfrastructureOutput = outputs[StageName.INFRASTRUCTURE]
        workspace_id = infrastructure.workspace_id

        summary = None
        if spec.manifest_url:
            summary = await self._rules.deploy_manifest(spec.manifest_url, workspace_id)

        workbook_outcomes: list[ReconcileOutcome] = []
        if spec.workbooks:
            publisher = self._workbooks
            if publisher is None:
                raise StageFailedError("No workbook publisher configured")
            resource_group_id = resource_group_id_of(workspace_id)
            for workbook in spec.workbooks:
                workbook_outcomes += await self._blocking(
                    lambda workbook=workbook: publisher.publish(
                        [workbook], workspace_id, resource_group_id
                    ),
                    f"Workbook {workbook.name}",
                    requests=RECONCILE_REQUESTS,
                )

        output = ContentOutput(manifest_summary=summary, workbook_outcomes=workbook_outcomes)
        failed = [o.ref.name for o in workbook_outcomes if o.failed]
        if failed:
            raise StageFailedError(f"Workbook publication failed: {failed}", output=output)
        return output

    async def _finalize_automation_roles(
        self,
        spec: DeploymentSpec,
        outputs: dict[StageName, Any],
        stage: StageDefinition,
    ) -> FinalizeOutput:
        preflight: PreflightOutput = outputs[StageName.PREFLIGHT_PROBE]
        infrastructure: InfrastructureOutput | None = outputs.get(StageName.INFRASTRUCTURE)
        workspace_id = infrastructure.workspace_id if infrastructure else preflight.workspace_id

        setting_outcomes = await self._retry_permission_skips(spec, preflight, infrastructure)

        principal = await self._discover(spec)
        bindings = await self._bind_automation_role(spec, principal, workspace_id)

        output = FinalizeOutput(
            principal=principal,
            binding_outcomes=bindings,
            setting_outcomes=setting_outcomes,
        )
        failed = [b for b in bindings if b.failed] + [o for o in setting_outcomes if o.failed]
        if failed:
            raise StageFailedError("; ".join(f.detail for f in failed), output=output)
        return output

    async def _retry_permission_skips(
        self,
        spec: DeploymentSpec,
        preflight: PreflightOutput,
        infrastructure: InfrastructureOutput | None,
    ) -> list[ReconcileOutcome]:
        """Re-attempt settings of the configured kinds.

        After Infrastructure, only settings of those kinds that were skipped
        for permission are retried. In a finalize-only run, every setting of
        those kinds is reconciled.
        """
        kinds = self._config.finalize_retry_kinds
        if not kinds:
            return []

        if infrastructure is not None:
            retry_paths = {
                o.ref.path
                for o in infrastructure.setting_outcomes
                if o.kind in kinds and o.status == ReconcileStatus.SKIPPED_PERMISSION
            }
            if not retry_paths:
                return []
            workspace_id = infrastructure.workspace_id
            deploy_connectors = infrastructure.data_connectors_deployed
        else:
            retry_paths = None
            workspace_id = preflight.workspace_id
            deploy_connectors = spec.overrides.deploy_data_connectors

        settings = build_desired_settings(
            spec,
            workspace_id,
            preflight.existing_paths,
            deploy_data_connectors=deploy_connectors,
            kinds=frozenset(kinds),
        )
        outcomes: list[ReconcileOutcome] = []
        for setting in settings:
            if retry_paths is not None and setting.ref.path not in retry_paths:
                continue
            outcome = await self._reconcile(setting)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes
