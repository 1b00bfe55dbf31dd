import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

NPM = "npm"
PNPM = "pnpm"
YARN = "yarn"

# Check order is priority order: pnpm beats yarn beats npm.
LOCK_FILES = [
    ("pnpm-lock.yaml", PNPM),
    ("yarn.lock", YARN),
    ("package-lock.json", NPM),
]

PACKAGE_MANAGER_COMMANDS = {
    NPM: {
        "lock_file": "package-lock.json",
        "install": "npm install",
        "dev": "npm run dev",
        "start": "npm start",
    },
    PNPM: {
        "lock_file": "pnpm-lock.yaml",
        "install": "npm install -g pnpm >/dev/null 2>&1; pnpm install",
        "dev": "pnpm dev",
        "start": "pnpm start",
    },
    YARN: {
        "lock_file": "yarn.lock",
        "install": "yarn install",
        "dev": "yarn dev",
        "start": "yarn start",
    },
}


@dataclass(frozen=True)
class LockFileDetection:
    """Which lock files were found in a repository. Never persisted."""

    pnpm: bool = False
    yarn: bool = False
    npm: bool = False

    def package_manager(self) -> str:
        if self.pnpm:
            return PNPM
        if self.yarn:
            return YARN
        return NPM


def get_commands(package_manager: str) -> dict:
    """Shell commands for a package manager, falling back to npm's."""
    return PACKAGE_MANAGER_COMMANDS.get(package_manager, PACKAGE_MANAGER_COMMANDS[NPM])


def detect_from_filenames(filenames) -> str:
    """Pick a package manager from a flat listing of repository paths.

    Only root-level lock files count; nested workspaces keep their own.
    """
    present = set(filenames)
    for lock_file, manager in LOCK_FILES:
        if lock_file in present:
            return manager
    return NPM


async def check_for_lock_files(repo_client, owner: str, repo: str, branch: str) -> LockFileDetection:
    """Check the repository for each known lock file.

    ``repo_client`` needs an async ``file_exists(owner, repo, path, ref)``.
    A failed check counts as "file absent".
    """
    found = {}
    for lock_file, manager in LOCK_FILES:
        try:
            found[manager] = bool(await repo_client.file_exists(owner, repo, lock_file, branch))
        except Exception as e:
            logger.warning(f"[package-manager] Check for {lock_file} in {owner}/{repo}@{branch} failed: {e}")
            found[manager] = False
        if found[manager]:
            logger.debug(f"[package-manager] Found {lock_file} in {owner}/{repo}@{branch}")
    return LockFileDetection(**found)


async def detect_package_manager(repo_client, owner: str, repo: str, branch: str = "main") -> str:
    """Return ``pnpm``, ``yarn`` or ``npm`` for the repository. Never raises."""
    try:
        detection = await check_for_lock_files(repo_client, owner, repo, branch)
    except Exception as e:
        logger.warning(f"[package-manager] Could not detect package manager for {owner}/{repo}, using npm: {e}")
        return NPM

    manager = detection.package_manager()
    logger.info(f"[package-manager] {owner}/{repo}@{branch} -> {manager}")
    return manager
