"""
Core application engine for mirroring the film catalog.

The `CatalogImporter` fills the catalog from the offstream.dk API, the
`DownloadCoordinator` claims and downloads eligible films, and the
`StatusReconciler` recovers claims abandoned by crashed processes.
"""
