from __future__ import annotations

import logging
from typing import Any

from monorepo_publisher.adapters.git.git_ops import GitRepository
from monorepo_publisher.integration.event_bus import EventBus
from monorepo_publisher.pipeline.checkpointing import CheckpointStore
from monorepo_publisher.pipeline.config import PublisherConfig
from monorepo_publisher.pipeline.runner import PipelineRunner
from monorepo_publisher.publish.options import PublishOptions
from monorepo_publisher.publish.packages import PackageGraph
from monorepo_publisher.publish.protocol import PublishCheckpointProtocol
from monorepo_publisher.publish.tasks import PublishTasks, stages_for_options

logger = logging.getLogger(__name__)


def create_runner(
    config: PublisherConfig,
    options: PublishOptions,
    *,
    bus: EventBus | None = None,
) -> PipelineRunner[Any, PublishOptions]:
    """Wire the publish stages, checkpoint store and protocol for one workspace."""
    root = config.workspace_root
    git = GitRepository(root)
    graph = PackageGraph.discover(root, config.workspace.package_globs)
    logger.debug("Discovered %d package(s) under %s", len(graph), root)

    tasks = PublishTasks(git=git, graph=graph, config=config)
    return PipelineRunner(
        stages=stages_for_options(options, tasks),
        store=CheckpointStore(config.checkpoint_slot(options.mode)),
        protocol=PublishCheckpointProtocol(options=options, git=git, packages=graph),
        expiration=config.checkpoint.expiration,
        bus=bus,
    )
