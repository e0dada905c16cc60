"""
Dependency Injection Container for cloudreader-sync.

Every component is a Singleton so the engine, the scheduler thread and the web
routes share one settings store, one index and one HTTP session.
"""

import logging
from pathlib import Path

from dependency_injector import containers, providers

from cloudreader_sync.api.cloudreader_client import CloudReaderClient
from cloudreader_sync.db.migration_utils import initialize_database
from cloudreader_sync.services.book_index import BookIndex
from cloudreader_sync.services.connectivity import ConnectivityService
from cloudreader_sync.services.placeholder_service import PlaceholderService
from cloudreader_sync.services.settings_store import SettingsStore
from cloudreader_sync.services.sync_scheduler import SyncScheduler
from cloudreader_sync.sync_clients.bundle_sync_client import BundleSyncClient
from cloudreader_sync.sync_clients.library_sync_client import LibrarySyncClient
from cloudreader_sync.sync_clients.progress_sync_client import ProgressSyncClient
from cloudreader_sync.sync_clients.sync_client_interface import HostHooks
from cloudreader_sync.sync_manager import SyncManager
from cloudreader_sync.utils.config_loader import get_data_dir

logger = logging.getLogger(__name__)


class Container(containers.DeclarativeContainer):

    data_dir = providers.Callable(get_data_dir)

    database_service = providers.Singleton(initialize_database, data_dir=data_dir)

    settings_store = providers.Singleton(SettingsStore, database_service=database_service)

    api_client = providers.Singleton(CloudReaderClient, settings_store=settings_store)

    book_index = providers.Singleton(BookIndex, database_service=database_service)

    # Host-supplied connectivity check; None falls back to an HTTP probe
    connectivity_probe = providers.Object(None)

    host_hooks = providers.Singleton(HostHooks)

    connectivity = providers.Singleton(
        ConnectivityService,
        api_client=api_client,
        probe=connectivity_probe,
    )

    placeholder_service = providers.Singleton(
        PlaceholderService,
        api_client=api_client,
        book_index=book_index,
        settings_store=settings_store,
    )

    library_sync_client = providers.Singleton(
        LibrarySyncClient,
        api_client=api_client,
        book_index=book_index,
        placeholder_service=placeholder_service,
        settings_store=settings_store,
    )

    bundle_sync_client = providers.Singleton(
        BundleSyncClient,
        api_client=api_client,
        book_index=book_index,
        settings_store=settings_store,
    )

    progress_sync_client = providers.Singleton(ProgressSyncClient, api_client=api_client)

    scheduler = providers.Singleton(SyncScheduler)

    sync_manager = providers.Singleton(
        SyncManager,
        settings_store=settings_store,
        api_client=api_client,
        book_index=book_index,
        placeholder_service=placeholder_service,
        library_sync_client=library_sync_client,
        bundle_sync_client=bundle_sync_client,
        progress_sync_client=progress_sync_client,
        connectivity=connectivity,
        scheduler=scheduler,
        hooks=host_hooks,
    )


def create_container(data_dir=None) -> Container:
    """Create the production container, optionally pinned to a data directory."""
    container = Container()
    if data_dir is not None:
        container.data_dir.override(providers.Object(Path(data_dir)))
    logger.debug(f"Container created (DATA_DIR={container.data_dir()})")
    return container
