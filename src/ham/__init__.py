"""
ham — Remote Build Orchestrator

Provides:
- Cloud client (HetznerCloudClient) — servers, volumes, SSH keys, prices
- Remote executor (RemoteSession) — retried SSH/SFTP against a build server
- Label store (SSHKeyLabelStore) — durable build status on the account key
- Lifecycle (ServerLifecycleManager) — find-or-create by build identity
- Deployment (Bootstrapper) — one-time guest setup and build start
- Tracker (ProgressTracker) — probe loop, log tail and outcome poll
- Destroy policy (should_destroy, CleanupGuard) — who may delete a server
- Orchestrator (BuildOrchestrator) — `ham get` end to end
"""

from .cloud import HetznerCloudClient, ServerInfo, VolumeInfo, ActionInfo, SSHKeyInfo, ServerTypeInfo
from .config import HamConfig, Settings, load_config
from .destroy import CleanupGuard, KeepFlags, ServerDestroyer, should_destroy
from .errors import (
    FailureKind, HamError, PreconditionError, CloudError, RemoteError,
    DestroyError, TerminalBuildError,
)
from .identity import name_for
from .labels import BuildOutcome, SSHKeyLabelStore
from .lifecycle import ServerLifecycleManager
from .bootstrap import Bootstrapper, DeploymentPlan
from .orchestrator import BuildOrchestrator, BuildOptions, BuildResult
from .recipe import Recipe, load_recipe, parse_git_remote
from .remote import RemoteSession, SessionFactory, ExecResult
from .retry import RetryPolicy, retry
from .tracker import ProgressTracker, TrackResult
from .variables import BuildVariables, collect_variables

__all__ = [
    'HetznerCloudClient', 'ServerInfo', 'VolumeInfo', 'ActionInfo', 'SSHKeyInfo', 'ServerTypeInfo',
    'HamConfig', 'Settings', 'load_config',
    'CleanupGuard', 'KeepFlags', 'ServerDestroyer', 'should_destroy',
    'FailureKind', 'HamError', 'PreconditionError', 'CloudError', 'RemoteError',
    'DestroyError', 'TerminalBuildError',
    'name_for',
    'BuildOutcome', 'SSHKeyLabelStore',
    'ServerLifecycleManager',
    'Bootstrapper', 'DeploymentPlan',
    'BuildOrchestrator', 'BuildOptions', 'BuildResult',
    'Recipe', 'load_recipe', 'parse_git_remote',
    'RemoteSession', 'SessionFactory', 'ExecResult',
    'RetryPolicy', 'retry',
    'ProgressTracker', 'TrackResult',
    'BuildVariables', 'collect_variables',
]
