"""Exception taxonomy for report ingestion."""


class IngestionError(Exception):
    """Base class for everything that can go wrong while ingesting a report."""


class ParseError(IngestionError):
    """The uploaded payload is not well-formed XML."""


class MalformedInputError(ParseError):
    """Well-formed XML without a <testsuites> or <testsuite> root."""


class PersistenceError(IngestionError):
    """A storage operation failed mid-ingestion.

    Suites committed before the failure stay in place; the caller must treat
    the run as incompletely ingested.
    """
