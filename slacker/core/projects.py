"""Per-project configuration: maintainers, tracked channels and repositories.

Each project is a YAML file in the config directory:

    name: arcade
    description: Arcade support
    maintainers: [zrl, max]
    slack-channels:
      - id: C01234
        name: arcade-help
        grouping: {minutes: 5}
        sla: {responseTime: 60}
    repos:
      - uri: https://github.com/hackclub/arcade
    slack-managers: [U01ABC]

A `maintainers.yaml` registry maps maintainer ids to their handles:

    - {id: zrl, slack: U01ABC, github: zachlatta}

Files are read once and served from memory until `reload()` is called.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

MAINTAINERS_FILE = "maintainers.yaml"


# =============================================================================
# CONFIG MODELS
# =============================================================================


class Grouping(BaseModel):
    minutes: int = Field(default=0, ge=0)


class Sla(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response_time: int | None = Field(default=None, alias="responseTime")


class ChannelConfig(BaseModel):
    id: str
    name: str = ""
    grouping: Grouping = Field(default_factory=Grouping)
    sla: Sla = Field(default_factory=Sla)


class RepoConfig(BaseModel):
    uri: str
    sla: Sla = Field(default_factory=Sla)

    @property
    def owner(self) -> str:
        return self.uri.rstrip("/").split("/")[-2]

    @property
    def name(self) -> str:
        return self.uri.rstrip("/").split("/")[-1]


class ProjectConfig(BaseModel):
    """One project file."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    maintainers: list[str] = Field(default_factory=list)
    channels: list[ChannelConfig] = Field(default_factory=list, alias="slack-channels")
    repos: list[RepoConfig] = Field(default_factory=list)
    managers: list[str] = Field(default_factory=list, alias="slack-managers")


class Maintainer(BaseModel):
    """A configured human: canonical id plus chat and forge handles."""

    id: str
    slack: str | None = None
    github: str | None = None


# =============================================================================
# CONFIG SERVICE
# =============================================================================


class ProjectConfigService:
    """Read-only lookups over the project configuration directory."""

    def __init__(self, config_dir: str | Path):
        self._config_dir = Path(config_dir)
        self._projects: dict[str, ProjectConfig] = {}
        self._maintainers: dict[str, Maintainer] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read every project file from disk."""
        projects: dict[str, ProjectConfig] = {}
        maintainers: dict[str, Maintainer] = {}

        if not self._config_dir.is_dir():
            logger.warning(f"Config directory {self._config_dir} does not exist")
        else:
            for path in sorted(self._config_dir.iterdir()):
                if path.suffix not in (".yaml", ".yml"):
                    continue

                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)

                if path.name == MAINTAINERS_FILE:
                    for entry in data or []:
                        maintainer = Maintainer.model_validate(entry)
                        maintainers[maintainer.id] = maintainer
                    continue

                data = data or {}
                data.setdefault("name", path.stem)
                try:
                    project = ProjectConfig.model_validate(data)
                except ValidationError as e:
                    logger.error(f"Invalid project config {path.name}: {e}")
                    continue
                projects[path.stem] = project

        self._projects = projects
        self._maintainers = maintainers
        logger.info(
            f"Loaded {len(projects)} projects and {len(maintainers)} maintainers "
            f"from {self._config_dir}"
        )

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def projects(self) -> dict[str, ProjectConfig]:
        return dict(self._projects)

    def project(self, name: str) -> ProjectConfig | None:
        return self._projects.get(name)

    def project_for_channel(self, channel_id: str) -> str | None:
        for key, project in self._projects.items():
            if any(c.id == channel_id for c in project.channels):
                return key
        return None

    def project_for_repo(self, repo_url: str) -> str | None:
        normalized = repo_url.rstrip("/").lower()
        for key, project in self._projects.items():
            if any(r.uri.rstrip("/").lower() == normalized for r in project.repos):
                return key
        return None

    def channel(self, channel_id: str) -> ChannelConfig | None:
        for project in self._projects.values():
            for channel in project.channels:
                if channel.id == channel_id:
                    return channel
        return None

    def is_tracked_channel(self, channel_id: str) -> bool:
        return self.channel(channel_id) is not None

    def resolve_grouping(self, channel_id: str) -> int:
        """Grouping window of a channel, in minutes (0 disables grouping)."""
        channel = self.channel(channel_id)
        return channel.grouping.minutes if channel else 0

    def is_manager(self, project: str, chat_id: str) -> bool:
        config = self._projects.get(project)
        return bool(config and chat_id in config.managers)

    # -------------------------------------------------------------------------
    # Maintainers
    # -------------------------------------------------------------------------

    def maintainer(self, maintainer_id: str) -> Maintainer | None:
        return self._maintainers.get(maintainer_id)

    def all_maintainers(self) -> list[Maintainer]:
        return list(self._maintainers.values())

    def maintainer_by_handle(
        self,
        chat_id: str | None = None,
        forge_login: str | None = None,
    ) -> Maintainer | None:
        for maintainer in self._maintainers.values():
            if chat_id and maintainer.slack == chat_id:
                return maintainer
            if forge_login and maintainer.github == forge_login:
                return maintainer
        return None

    def resolve_maintainers(
        self,
        channel_id: str | None = None,
        repo_url: str | None = None,
    ) -> list[Maintainer]:
        """Maintainers responsible for a channel or a repository."""
        key = None
        if channel_id:
            key = self.project_for_channel(channel_id)
        if key is None and repo_url:
            key = self.project_for_repo(repo_url)
        if key is None:
            return []

        result = []
        for maintainer_id in self._projects[key].maintainers:
            maintainer = self._maintainers.get(maintainer_id)
            result.append(maintainer or Maintainer(id=maintainer_id))
        return result

    def projects_for_maintainer(self, maintainer_id: str) -> list[str]:
        return [
            key for key, project in self._projects.items()
            if maintainer_id in project.maintainers
        ]
