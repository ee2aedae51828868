from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlsplit

from sqlalchemy import and_, delete, exists, select, update
from sqlalchemy.orm import Session

from pluginfed.federation import signing
from pluginfed.models import SENTINEL_VERSION, MirroredPlugin, Source, VersionUpdate
from pluginfed.utils.clock import Clock, utc_now
from pluginfed.utils.exceptions import AssetInfoMissing, PluginfedError, RemoteIncompatible

_TEMPLATE_TOKENS = re.compile(r'author|slug')
_UNSAFE_SEGMENT = re.compile(r'[/\\\x00-\x1f\x7f]|\.\.')

BLOB_NAMESPACE = 'federated'


@dataclass
class SyncResult:
    """Summary of one catalog synchronization."""

    mirrored_count: int
    total_plugins: int
    author_info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mirrored_count': self.mirrored_count,
            'total_plugins': self.total_plugins,
            'author_info': self.author_info,
        }


def check_path_segment(value: Any, field_name: str) -> str:
    """Return ``value`` as a string usable as one blob path segment.

    Raises:
        RemoteIncompatible: If the value is empty or holds a separator, ``..`` or a control character
    """
    text = str(value)
    if not text.strip() or _UNSAFE_SEGMENT.search(text):
        raise RemoteIncompatible(f'Unsafe plugin {field_name}: {text!r}', field=field_name)
    return text


def normalize_tags(tags: Any) -> List[str]:
    """Tags arrive either as a list or as a mapping whose values are the tags."""
    if isinstance(tags, dict):
        tags = list(tags.values())
    if not isinstance(tags, (list, tuple)):
        return []
    return [str(tag) for tag in tags if tag is not None]


def normalize_plugin(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Map a remote catalog entry to a plugin descriptor.

    Raises:
        RemoteIncompatible: If the entry lacks a slug or a version, or either is unsafe as a path segment
    """
    slug = entry.get('slug')
    version = entry.get('version')
    if not slug or not version:
        raise RemoteIncompatible(f'Catalog entry without slug or version: {entry.get("name")!r}')
    slug = check_path_segment(slug, 'slug')
    return {
        'id': slug,
        'name': str(entry.get('name') or slug),
        'version': check_path_segment(version, 'version'),
        'description': entry.get('short_description') or '',
        'tags': normalize_tags(entry.get('tags')),
        'rating': entry.get('rating'),
        'install_count': entry.get('active_installs'),
        'icons': entry.get('icons'),
        'signature': entry.get('signature') or '',
    }


def filter_plugins(plugins: Iterable[Dict[str, Any]], filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep plugins sharing at least one tag with ``filters['tags']``.

    No filter, or an empty tag list, keeps everything.
    """
    plugins = list(plugins)
    wanted = set(normalize_tags((filters or {}).get('tags')))
    if not wanted:
        return plugins
    return [plugin for plugin in plugins if wanted.intersection(plugin.get('tags') or [])]


def build_download_url(naming_scheme: str, asset_domain: str, username: str, plugin_id: str) -> str:
    """Fill the asset naming scheme and resolve it against the asset domain.

    The first ``author`` token becomes the username and every ``slug`` token
    becomes the plugin id, in a single pass so substituted values are never
    rescanned.
    """
    author_used = False

    def substitute(match: re.Match) -> str:
        nonlocal author_used
        if match.group(0) == 'slug':
            return plugin_id
        if author_used:
            return match.group(0)
        author_used = True
        return username

    path = _TEMPLATE_TOKENS.sub(substitute, naming_scheme)
    if not urlsplit(asset_domain).scheme:
        asset_domain = f'https://{asset_domain}'
    return urljoin(asset_domain, path)


def blob_key(source_id: str, plugin_id: str, version: str) -> str:
    plugin_id = check_path_segment(plugin_id, 'slug')
    version = check_path_segment(version, 'version')
    return f'{BLOB_NAMESPACE}/{source_id}/{plugin_id}-{version}'


class MirrorSynchronizer:
    """Fetches a source's catalog and mirrors plugin versions into the blob store.

    The synchronizer is the only writer of ``mirrored_plugins`` and
    ``version_updates``. Each mirrored row and the version transition it
    implies are written in one transaction.
    """

    AUTHOR_DATA_PATH = '/author-data'

    def __init__(
            self,
            database_manager: Any,
            blob_store: Any,
            remote_client: Any,
            registry: Any,
            logger_manager: Any,
            clock: Optional[Clock] = None
    ) -> None:
        """Initialize the synchronizer.

        Args:
            database_manager: The database manager
            blob_store: Store for artifact bytes
            remote_client: The remote client
            registry: The source registry
            logger_manager: The logging manager
            clock: Source of the current UTC time
        """
        self._db = database_manager
        self._blobs = blob_store
        self._remote = remote_client
        self._registry = registry
        self._logger = logger_manager.get_logger('mirror_synchronizer')
        self._clock = clock or utc_now

    async def sync_source_plugins(self, source_id: str, filters: Optional[Dict[str, Any]] = None) -> SyncResult:
        """Mirror every catalog plugin of a source that passes ``filters``.

        Per-plugin failures are logged and counted out of ``mirrored_count``.
        ``last_sync`` is touched once the catalog has been processed, whatever
        the per-plugin outcome.

        Args:
            source_id: The source to synchronize
            filters: Subscriber filter, e.g. ``{'tags': ['seo']}``

        Returns:
            Counts and the author profile the remote declared

        Raises:
            SourceNotFound: If the source does not exist
            RemoteUnavailable: If the catalog cannot be fetched
            RemoteIncompatible: If the catalog body is malformed
        """
        source = await self._registry.require_source(source_id)
        url = f'{source.instance_url}{self.AUTHOR_DATA_PATH}'
        author_data = await self._remote.get_json(url, params={'author': source.username})

        if not isinstance(author_data, dict) or not isinstance(author_data.get('plugins'), list):
            raise RemoteIncompatible('Author data has no plugin list', url=url)

        plugins = []
        for entry in author_data['plugins']:
            if not isinstance(entry, dict):
                self._logger.warning(f'Skipping non-object catalog entry from {source_id}', extra={'source_id': source_id})
                continue
            try:
                plugins.append(normalize_plugin(entry))
            except RemoteIncompatible as e:
                self._logger.warning(f'Skipping catalog entry: {e.message}', extra={'source_id': source_id})

        selected = filter_plugins(plugins, filters)
        self._logger.info(
            f'Syncing {len(selected)} of {len(plugins)} plugins from {source_id}',
            extra={'source_id': source_id, 'filters': filters or {}}
        )

        mirrored_count = 0
        for plugin in selected:
            if await self.mirror_plugin(plugin, source):
                mirrored_count += 1

        await self._registry.touch_last_sync(source_id)

        return SyncResult(
            mirrored_count=mirrored_count,
            total_plugins=len(selected),
            author_info={
                'username': author_data.get('username'),
                'member_since': author_data.get('member_since'),
                'website': author_data.get('website'),
                'github': author_data.get('github'),
                'twitter': author_data.get('twitter'),
            },
        )

    async def mirror_plugin(self, plugin: Dict[str, Any], source: Source) -> bool:
        """Mirror one plugin version. Never raises for fetch, storage or precondition failures.

        Args:
            plugin: Normalized plugin descriptor
            source: The source publishing it

        Returns:
            True if the version is mirrored, now or previously
        """
        log_extra = {'source_id': source.id, 'plugin_id': plugin.get('id'), 'version': plugin.get('version')}
        try:
            if await self._is_mirrored(plugin['id'], source.id, plugin['version']):
                self._logger.debug(f'Plugin {plugin["id"]} {plugin["version"]} already mirrored', extra=log_extra)
                return True

            if not source.has_asset_info:
                raise AssetInfoMissing(
                    f'Source {source.id} has no asset information',
                    source_id=source.id
                )

            signature = plugin.get('signature')
            if signature and not signing.verify_plugin_signature(plugin, signature, source.public_key):
                self._logger.warning(f'Rejected plugin {plugin["id"]}: signature mismatch', extra=log_extra)
                return False

            url = build_download_url(source.asset_naming_scheme, source.asset_domain, source.username, plugin['id'])
            key = blob_key(source.id, plugin['id'], plugin['version'])
            self._check_namespace(source.id, key)
            content = await self._remote.fetch_bytes(url)
            path = await self._blobs.put(key, content)

            async with self._db.session() as session:
                if self._find_mirrored(session, plugin['id'], source.id, plugin['version']):
                    return True
                now = self._clock()
                previous = self._latest_version(session, plugin['id'], source.id)
                session.add(MirroredPlugin(
                    plugin_id=plugin['id'],
                    source_id=source.id,
                    name=plugin['name'],
                    version=plugin['version'],
                    description=plugin.get('description'),
                    local_path=path,
                    signature=signature or '',
                    mirror_date=now,
                ))
                if previous != plugin['version']:
                    session.add(VersionUpdate(
                        plugin_id=plugin['id'],
                        source_id=source.id,
                        old_version=previous,
                        new_version=plugin['version'],
                        update_time=now,
                    ))

            self._logger.info(f'Mirrored plugin {plugin["id"]} {plugin["version"]} ({len(content)} bytes)', extra=log_extra)
            return True
        except PluginfedError as e:
            self._logger.error(f'Failed to mirror plugin {plugin.get("id")}: {e.message}', extra=log_extra)
            return False
        except Exception as e:
            self._logger.error(
                f'Unexpected error mirroring plugin {plugin.get("id")}: {str(e)}',
                extra=log_extra,
                exc_info=True
            )
            return False

    def _check_namespace(self, source_id: str, key: str) -> None:
        """Make sure ``key`` resolves below the source's own blob directory."""
        namespace = self._blobs.get_blob_path(f'{BLOB_NAMESPACE}/{source_id}')
        if namespace not in self._blobs.get_blob_path(key).parents:
            raise RemoteIncompatible(f'Blob key {key!r} escapes the namespace of {source_id}', source_id=source_id)

    async def _is_mirrored(self, plugin_id: str, source_id: str, version: str) -> bool:
        async with self._db.session() as session:
            return self._find_mirrored(session, plugin_id, source_id, version)

    @staticmethod
    def _find_mirrored(session: Session, plugin_id: str, source_id: str, version: str) -> bool:
        return session.execute(
            select(MirroredPlugin.id).where(
                MirroredPlugin.plugin_id == plugin_id,
                MirroredPlugin.source_id == source_id,
                MirroredPlugin.version == version,
            )
        ).first() is not None

    @staticmethod
    def _latest_version(session: Session, plugin_id: str, source_id: str) -> str:
        version = session.execute(
            select(MirroredPlugin.version)
            .where(MirroredPlugin.plugin_id == plugin_id, MirroredPlugin.source_id == source_id)
            .order_by(MirroredPlugin.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return version if version is not None else SENTINEL_VERSION

    async def backfill_version_updates(self) -> List[VersionUpdate]:
        """Record a first version transition for plugins mirrored without one.

        Each (plugin, source) pair that has mirrored rows but no version update
        gets ``0.0.0 -> earliest version``, dated at that row's mirror date.

        Returns:
            The inserted rows
        """
        has_update = exists().where(and_(
            VersionUpdate.plugin_id == MirroredPlugin.plugin_id,
            VersionUpdate.source_id == MirroredPlugin.source_id,
        ))
        inserted: List[VersionUpdate] = []

        async with self._db.session() as session:
            rows = session.execute(
                select(MirroredPlugin)
                .where(~has_update)
                .order_by(MirroredPlugin.mirror_date, MirroredPlugin.id)
            ).scalars()

            seen = set()
            for row in rows:
                key = (row.plugin_id, row.source_id)
                if key in seen:
                    continue
                seen.add(key)
                inserted.append(VersionUpdate(
                    plugin_id=row.plugin_id,
                    source_id=row.source_id,
                    old_version=SENTINEL_VERSION,
                    new_version=row.version,
                    update_time=row.mirror_date,
                ))
            session.add_all(inserted)

        if inserted:
            self._logger.info(f'Backfilled {len(inserted)} version updates')
        return inserted

    async def unnotified_updates(self, source_id: Optional[str] = None) -> List[VersionUpdate]:
        query = select(VersionUpdate).where(VersionUpdate.notified.is_(False))
        if source_id is not None:
            query = query.where(VersionUpdate.source_id == source_id)
        async with self._db.session() as session:
            return list(session.execute(query.order_by(VersionUpdate.update_time, VersionUpdate.id)).scalars())

    async def mark_notified(self, update_ids: Iterable[int]) -> int:
        update_ids = list(update_ids)
        if not update_ids:
            return 0
        async with self._db.session() as session:
            result = session.execute(
                update(VersionUpdate).where(VersionUpdate.id.in_(update_ids)).values(notified=True)
            )
            return result.rowcount

    async def purge_version_updates(self, older_than: datetime.datetime) -> int:
        """Delete version updates recorded before ``older_than``.

        Returns:
            Number of deleted rows
        """
        async with self._db.session() as session:
            result = session.execute(delete(VersionUpdate).where(VersionUpdate.update_time < older_than))
            deleted = result.rowcount
        if deleted:
            self._logger.info(f'Purged {deleted} version updates older than {older_than.isoformat()}')
        return deleted
