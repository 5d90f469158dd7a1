"""
Core cache engine.

The `CacheGroupManager` is the public entry point that turns caching on and off
for articles. It delegates the fate of each individual item to the
`DownloadCoordinator`, and legacy content to the `MigrationAdapter`.
"""
