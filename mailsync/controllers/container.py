from typing import cast

from dependency_injector import containers, providers

from mailsync.controllers.drafts.draft_controller import DraftController
from mailsync.controllers.identity.identity_mapper import IdentityMapper
from mailsync.controllers.mailbox.mailbox_controller import MailboxController
from mailsync.controllers.mutations.bulk_mutation import BulkMutationCoordinator
from mailsync.controllers.sync.reconciliation import ReconciliationEngine
from mailsync.controllers.sync.scheduler import SyncScheduler
from mailsync.repos.container import RepoContainer


class ControllerContainer(containers.DeclarativeContainer):
    repos: RepoContainer = cast(RepoContainer, providers.DependenciesContainer())
    transport = providers.Dependency()

    identity_mapper = providers.Singleton(IdentityMapper)
    reconciliation_engine = providers.Singleton(
        ReconciliationEngine,
        cache_store=repos.cache_store,
        identity_mapper=identity_mapper,
        transport=transport,
    )
    bulk_mutation = providers.Singleton(
        BulkMutationCoordinator,
        cache_store=repos.cache_store,
        identity_mapper=identity_mapper,
        transport=transport,
    )
    draft_controller = providers.Singleton(
        DraftController,
        draft_repo=repos.draft,
        cache_store=repos.cache_store,
        identity_mapper=identity_mapper,
        transport=transport,
    )
    mailbox_controller = providers.Singleton(
        MailboxController,
        cache_store=repos.cache_store,
        reconciliation_engine=reconciliation_engine,
        bulk_mutation=bulk_mutation,
        draft_controller=draft_controller,
        transport=transport,
    )
    sync_scheduler = providers.Factory(SyncScheduler, sync_account=mailbox_controller.provided.sync_account)
