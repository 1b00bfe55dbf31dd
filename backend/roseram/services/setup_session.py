"""Resumable four-step machine setup.

1. detect and validate the GitHub repository
2. allocate the sandbox machine
3. configure its environment
4. clone the repository and boot the dev server

Step ``n`` may run only once steps ``1..n-1`` are completed. A failed step
marks the session ``failed`` but keeps the steps already completed, so the
same step can be retried without redoing earlier ones. Earlier steps are
trusted as-is on retry: nothing checks that a machine allocated in step 2 is
still alive when step 4 runs.
"""

import uuid
import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import ClassVar, Union

from roseram import database
from roseram.errors import (
    ExternalServiceError,
    NotFoundError,
    PreconditionError,
    ValidationError,
    format_error_message,
)
from roseram.services.github import Credential, GitHubClient, parse_repo_url, repo_clone_url
from roseram.services.package_manager import detect_package_manager
from roseram.services.preview_manager import DEFAULT_BOOT_TIMEOUT_MS, PREVIEW_DOMAIN
from roseram.services.sandbox import DEFAULT_DEV_PORT, SandboxClient, SandboxHandle, get_sandbox_client

logger = logging.getLogger(__name__)

TOTAL_STEPS = 4

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STEP_DESCRIPTIONS = {
    1: "Detecting and validating your GitHub repository",
    2: "Allocating machine resources",
    3: "Configuring machine environment and settings",
    4: "Cloning and booting your repository",
}


# ── Step results ──


@dataclass
class RepositoryDetected:
    step: ClassVar[int] = 1
    status: ClassVar[str] = "completed"
    repository_name: str
    repository_url: str
    branch_name: str
    default_branch: str
    private: bool
    package_manager: str


@dataclass
class MachineAllocated:
    step: ClassVar[int] = 2
    status: ClassVar[str] = "completed"
    app_name: str
    sandbox_id: str
    region: str
    ram_mb: int
    cpus: int


@dataclass
class MachineConfigured:
    step: ClassVar[int] = 3
    status: ClassVar[str] = "completed"
    environment: dict
    internal_port: int
    ram_mb: int
    cpus: int
    auto_stop: bool = True
    shutdown_after_inactivity: str = "1h"


@dataclass
class MachineBooted:
    step: ClassVar[int] = 4
    status: ClassVar[str] = "completed"
    preview_url: str
    port: int
    process_id: int | None
    package_manager: str


@dataclass
class StepFailed:
    status: ClassVar[str] = "error"
    step: int
    error: str


StepResult = Union[RepositoryDetected, MachineAllocated, MachineConfigured, MachineBooted, StepFailed]


def step_result_to_dict(result: StepResult) -> dict:
    return {
        "step": result.step,
        "status": result.status,
        "description": get_step_description(result.step),
        "details": {k: v for k, v in asdict(result).items() if k != "step"},
    }


# ── Session ──


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class SetupSession:
    id: str
    project_id: str
    user_id: str
    github_repo_url: str
    github_branch: str
    github_owner: str
    github_repo_name: str
    fly_app_name: str
    preview_url: str
    current_step: int = 1
    completed_steps: list[int] = field(default_factory=list)
    overall_status: str = IN_PROGRESS
    error_message: str | None = None
    error_step: int | None = None
    sandbox_id: str | None = None
    step_details: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in (COMPLETED, CANCELLED)

    def to_row(self) -> dict:
        row = asdict(self)
        row["created_at"] = self.created_at.isoformat()
        row["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        row["step_details"] = {str(k): v for k, v in self.step_details.items()}
        return row

    @classmethod
    def from_row(cls, row: dict) -> "SetupSession":
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in row.items() if k in known}
        data["completed_steps"] = sorted(set(data.get("completed_steps") or []))
        data["step_details"] = {int(k): v for k, v in (data.get("step_details") or {}).items()}
        data["created_at"] = _parse_time(data.get("created_at")) or _now()
        data["completed_at"] = _parse_time(data.get("completed_at"))
        return cls(**data)

    def to_dict(self) -> dict:
        data = self.to_row()
        data["progress"] = calculate_progress(self.completed_steps)
        data["next_step"] = get_next_step(self.completed_steps)
        data["duration"] = format_duration(self.created_at, self.completed_at)
        return data


# ── Pure helpers ──


def calculate_progress(completed_steps) -> int:
    return round(len(completed_steps) / TOTAL_STEPS * 100)


def can_execute_step(step_number: int, completed_steps) -> bool:
    if step_number == 1:
        return True
    return all(step in completed_steps for step in range(1, step_number))


def get_next_step(completed_steps) -> int:
    for step in range(1, TOTAL_STEPS + 1):
        if step not in completed_steps:
            return step
    return TOTAL_STEPS


def is_setup_complete(completed_steps) -> bool:
    return set(completed_steps) >= set(range(1, TOTAL_STEPS + 1))


def get_step_description(step_number: int) -> str:
    return STEP_DESCRIPTIONS.get(step_number, "Unknown step")


def _to_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return _to_datetime(_parse_time(value))


def format_duration(start, end=None) -> str:
    """Render elapsed time as ``45s``, ``1m 5s`` or ``2h 3m``.

    ``start``/``end`` may be datetimes, ISO strings or epoch milliseconds.
    """
    start_dt = _to_datetime(start)
    end_dt = _to_datetime(end) if end is not None else _now()
    seconds = max(0, int((end_dt - start_dt).total_seconds()))

    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def generate_app_name(user_id: str, project_id: str) -> str:
    digest = hashlib.md5(f"{user_id}-{project_id}".encode("utf-8")).hexdigest()[:8]
    return f"roseram-{digest}"


# ── Stores ──


class InMemorySetupSessionStore:
    def __init__(self):
        self._sessions: dict[str, SetupSession] = {}

    async def create(self, session: SetupSession) -> SetupSession:
        self._sessions[session.id] = session
        return session

    async def get(self, session_id: str) -> SetupSession | None:
        return self._sessions.get(session_id)

    async def find_in_progress(self, project_id: str, user_id: str) -> SetupSession | None:
        matches = [
            s for s in self._sessions.values()
            if s.project_id == project_id and s.user_id == user_id and s.overall_status == IN_PROGRESS
        ]
        return max(matches, key=lambda s: s.created_at) if matches else None

    async def save(self, session: SetupSession) -> SetupSession:
        self._sessions[session.id] = session
        return session


class SupabaseSetupSessionStore:
    """Sessions persisted in the ``machine_setup_sessions`` table."""

    async def create(self, session: SetupSession) -> SetupSession:
        row = await database.insert_setup_session(session.to_row())
        if row is None:
            raise ExternalServiceError("Database", "Failed to create setup session")
        return SetupSession.from_row(row)

    async def get(self, session_id: str) -> SetupSession | None:
        row = await database.get_setup_session_row(session_id)
        return SetupSession.from_row(row) if row else None

    async def find_in_progress(self, project_id: str, user_id: str) -> SetupSession | None:
        row = await database.find_in_progress_session(project_id, user_id)
        return SetupSession.from_row(row) if row else None

    async def save(self, session: SetupSession) -> SetupSession:
        row = session.to_row()
        row.pop("id")
        if not await database.update_setup_session(session.id, row):
            raise ExternalServiceError("Database", f"Failed to update setup session {session.id}")
        return session


# ── Service ──


class SetupSessionService:
    def __init__(
        self,
        store=None,
        sandbox_client: SandboxClient | None = None,
        repo_client_factory=GitHubClient,
        preview_domain: str = PREVIEW_DOMAIN,
        region: str = "ord",
        ram_mb: int = 1024,
        cpus: int = 1,
        boot_timeout_ms: int = DEFAULT_BOOT_TIMEOUT_MS,
    ):
        self.store = store if store is not None else InMemorySetupSessionStore()
        self._sandbox_client = sandbox_client
        self.repo_client_factory = repo_client_factory
        self.preview_domain = preview_domain
        self.region = region
        self.ram_mb = ram_mb
        self.cpus = cpus
        self.boot_timeout_ms = boot_timeout_ms

    @property
    def sandbox_client(self) -> SandboxClient:
        if self._sandbox_client is None:
            self._sandbox_client = get_sandbox_client()
        return self._sandbox_client

    async def initialize_setup_session(
        self,
        project_id: str,
        github_repo: str,
        github_branch: str = "main",
        auth_token: str | None = None,
        user_id: str = "anonymous",
    ) -> SetupSession:
        """Resume the project's in-progress session, or start a new one.

        ``auth_token`` is accepted for symmetry with ``execute_setup_step``;
        the repository is not contacted until step 1 runs.
        """
        if not project_id or not github_repo:
            raise ValidationError("projectId and githubRepo are required")

        existing = await self.store.find_in_progress(project_id, user_id)
        if existing:
            logger.info(f"[setup:{existing.id}] Resuming setup session for project {project_id}")
            return existing

        owner, repo = parse_repo_url(github_repo)
        app_name = generate_app_name(user_id, project_id)
        session = SetupSession(
            id=str(uuid.uuid4()),
            project_id=project_id,
            user_id=user_id,
            github_repo_url=github_repo,
            github_branch=github_branch or "main",
            github_owner=owner,
            github_repo_name=repo,
            fly_app_name=app_name,
            preview_url=f"https://{app_name}.{self.preview_domain}",
        )
        session = await self.store.create(session)
        logger.info(f"[setup:{session.id}] Created setup session for project {project_id} ({app_name})")
        return session

    async def get_setup_session(self, session_id: str) -> SetupSession:
        session = await self.store.get(session_id)
        if session is None:
            raise NotFoundError("Setup session")
        return session

    async def cancel_setup_session(self, session_id: str) -> SetupSession:
        session = await self.get_setup_session(session_id)
        if session.is_terminal:
            return session
        session.overall_status = CANCELLED
        await self.store.save(session)
        logger.info(f"[setup:{session_id}] Cancelled at step {session.current_step}")
        return session

    async def execute_setup_step(
        self,
        session_id: str,
        step_number: int,
        auth_token: str | None = None,
    ) -> tuple[SetupSession, StepResult]:
        """Run one step. Out-of-order requests raise ``PreconditionError``.

        Step failures do not raise: they are recorded on the session and
        returned as ``StepFailed``.
        """
        if step_number not in STEP_DESCRIPTIONS:
            raise ValidationError(f"Invalid step number: {step_number}")

        session = await self.get_setup_session(session_id)
        if session.is_terminal:
            raise PreconditionError(f"Setup session is already {session.overall_status}")
        if not can_execute_step(step_number, session.completed_steps):
            missing = [s for s in range(1, step_number) if s not in session.completed_steps]
            raise PreconditionError(
                f"Step {step_number} requires steps {missing} to be completed first",
                {"completedSteps": session.completed_steps},
            )

        tag = f"[setup:{session_id}]"
        logger.info(f"{tag} Executing step {step_number}: {get_step_description(step_number)}")
        session.overall_status = IN_PROGRESS
        session.current_step = step_number
        credential = Credential(auth_token) if auth_token else None

        steps = {
            1: self._detect_repository,
            2: self._allocate_machine,
            3: self._configure_machine,
            4: self._boot_repository,
        }
        try:
            result = await steps[step_number](session, credential)
        except Exception as e:
            message = format_error_message(e)
            logger.error(f"{tag} Step {step_number} failed: {message}")
            result = StepFailed(step=step_number, error=message)
            session.overall_status = FAILED
            session.error_step = step_number
            session.error_message = message
            session.step_details[step_number] = step_result_to_dict(result)
            await self.store.save(session)
            return session, result

        session.completed_steps = sorted(set(session.completed_steps) | {step_number})
        session.current_step = min(step_number + 1, TOTAL_STEPS)
        session.error_step = None
        session.error_message = None
        session.step_details[step_number] = step_result_to_dict(result)
        if is_setup_complete(session.completed_steps):
            session.overall_status = COMPLETED
            session.completed_at = _now()
            logger.info(f"{tag} Setup completed in {format_duration(session.created_at, session.completed_at)}")

        await self.store.save(session)
        logger.info(f"{tag} Step {step_number} completed ({calculate_progress(session.completed_steps)}%)")
        return session, result

    async def _detect_repository(self, session: SetupSession, credential: Credential | None) -> RepositoryDetected:
        client = self.repo_client_factory(credential)
        owner, repo = session.github_owner, session.github_repo_name
        repo_data = await client.get_repository(owner, repo)
        branch_data = await client.get_branch(owner, repo, session.github_branch)
        package_manager = await detect_package_manager(client, owner, repo, session.github_branch)
        return RepositoryDetected(
            repository_name=repo_data.get("full_name", f"{owner}/{repo}"),
            repository_url=repo_data.get("html_url", session.github_repo_url),
            branch_name=branch_data.get("name", session.github_branch),
            default_branch=repo_data.get("default_branch", "main"),
            private=bool(repo_data.get("private", False)),
            package_manager=package_manager,
        )

    async def _allocate_machine(self, session: SetupSession, credential: Credential | None) -> MachineAllocated:
        handle = await self.sandbox_client.create_sandbox(
            session.fly_app_name,
            region=self.region,
            ram_mb=self.ram_mb,
            cpus=self.cpus,
        )
        session.sandbox_id = handle.id
        return MachineAllocated(
            app_name=handle.name,
            sandbox_id=handle.id,
            region=handle.region or self.region,
            ram_mb=self.ram_mb,
            cpus=self.cpus,
        )

    async def _configure_machine(self, session: SetupSession, credential: Credential | None) -> MachineConfigured:
        if not session.sandbox_id:
            raise PreconditionError("No machine has been allocated for this session")
        return MachineConfigured(
            environment={
                "NODE_ENV": "development",
                "PORT": str(DEFAULT_DEV_PORT),
                "HOST": "0.0.0.0",
                "GITHUB_TOKEN": "***" if credential else "not configured",
            },
            internal_port=DEFAULT_DEV_PORT,
            ram_mb=self.ram_mb,
            cpus=self.cpus,
        )

    async def _boot_repository(self, session: SetupSession, credential: Credential | None) -> MachineBooted:
        if not session.sandbox_id:
            raise PreconditionError("No machine has been allocated for this session")
        package_manager = (session.step_details.get(1) or {}).get("details", {}).get("package_manager", "npm")
        handle = SandboxHandle(name=session.fly_app_name, id=session.sandbox_id, region=self.region)
        server = await self.sandbox_client.clone_and_run(
            handle,
            repo_clone_url(session.github_owner, session.github_repo_name),
            session.github_branch,
            timeout_ms=self.boot_timeout_ms,
            package_manager=package_manager,
            script_name="dev",
            auth_token=credential.token if credential else None,
        )
        if server.preview_url:
            session.preview_url = server.preview_url
        return MachineBooted(
            preview_url=session.preview_url,
            port=server.port,
            process_id=server.process_id,
            package_manager=package_manager,
        )


_setup_service: SetupSessionService | None = None


def get_setup_service() -> SetupSessionService:
    """Process-wide service, persisting to Supabase when it is configured."""
    global _setup_service
    if _setup_service is None:
        store = SupabaseSetupSessionStore() if database.get_supabase() is not None else InMemorySetupSessionStore()
        _setup_service = SetupSessionService(store=store)
        logger.info(f"[setup] Using {type(store).__name__}")
    return _setup_service
