from typing import cast

from dependency_injector import containers, providers

from mailsync.controllers.container import ControllerContainer
from mailsync.repos.container import RepoContainer


class ApplicationContainer(containers.DeclarativeContainer):
    """Session-scoped object graph. The blob store and the transport are supplied by the caller."""

    blob_store = providers.Dependency()
    transport = providers.Dependency()

    repos: RepoContainer = cast(RepoContainer, providers.Container(RepoContainer, blob_store=blob_store))
    controllers: ControllerContainer = cast(
        ControllerContainer, providers.Container(ControllerContainer, repos=repos, transport=transport)
    )
