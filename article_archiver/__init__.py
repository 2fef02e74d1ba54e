"""article-archiver command line package."""
