#!/usr/bin/env python3

"""
List tags and their manifest digests from a remote container registry.

Meant for detecting drift between locally cached images and what a registry
currently publishes.  Manifest digests are looked up concurrently, one batch
of at most <concurrency> requests at a time.

Input arguments (in order):
    Registry - host[:port] of a registry serving the Docker Registry HTTP
               API v2, e.g. "quay.io"
    Repository - repository path within the registry, e.g. "podman/stable"

Expects $REGISTRY_AUTH to hold the complete value for the HTTP Authorization
header, e.g. "Bearer <token>".  It is sent as-is.
"""

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser
from collections import namedtuple
from functools import partial
from traceback import extract_stack

# Ref: https://docs.aiohttp.org/en/stable/http_request_lifecycle.html
from aiohttp import ClientError, ClientSession, ClientTimeout

# Ref: https://github.com/rconradharris/envparse
from envparse import env

import yaml


# Inclusive bounds for the number of simultaneous manifest requests
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 128

# Used when $REGISTRY_TAGS_CONCURRENCY / $REGISTRY_TAGS_TIMEOUT are unset
DEFAULT_CONCURRENCY = 16
DEFAULT_TIMEOUT = 300.0

# Digest is read from this response header, never from the manifest body.
DIGEST_HEADER = "Docker-Content-Digest"

ACCEPT_TYPES = ("application/json",
                "application/vnd.docker.distribution.manifest.v2+json")

# What fetch_all() does with a tag whose manifest request failed in transport
TRANSPORT_POLICIES = ("record", "abort")


def dbg(msg: str) -> None:
    """Shorthand for calling logging.debug()."""
    caller = extract_stack(limit=2)[0]
    logging.debug(msg, extra=dict(loc=f'(line {caller.lineno})'))


def warn(msg: str) -> None:
    """Shorthand for calling logging.warning()."""
    caller = extract_stack(limit=2)[0]
    logging.warning(msg, extra=dict(loc=f'(line {caller.lineno})'))


def err(msg: str) -> None:
    """Print an error message to stderr and exit non-zero."""
    caller = extract_stack(limit=2)[0]
    logging.error(msg, extra=dict(loc=f'(line {caller.lineno})'))
    sys.exit(1)


def default_loc(record: logging.LogRecord) -> bool:
    """Logging filter, supply an empty 'loc' for records not from dbg()/warn()/err()."""
    if not hasattr(record, "loc"):
        record.loc = ""
    return True


class RegistryTagsError(Exception):
    """Base class for all errors raised here."""


class ValidationError(RegistryTagsError, ValueError):
    """An argument value was rejected before any network request was made."""


class ListError(RegistryTagsError):
    """The repository's tag list could not be retrieved."""


class FetchError(RegistryTagsError):
    """The manifest digest of a single tag could not be retrieved."""

    def __init__(self, tag: str, msg: str) -> None:
        super().__init__(msg)
        self.tag = tag


class DigestHeaderMissing(FetchError):
    """Manifest response was successful but lacked the digest header."""


class TransportFailure(FetchError):
    """Manifest request failed to connect, or returned a non-200 status."""


class DigestResult(namedtuple("DigestResult", ["tag", "digest", "error"])):
    """Outcome of one manifest lookup: a digest, or a FetchError instance."""

    __slots__ = ()

    @property
    def ok(self) -> bool:
        return self.error is None


# names is a list of tag names, error is None or the reason names is empty
# because the registry's response could not be understood.
TagListing = namedtuple("TagListing", ["names", "error"])

Config = namedtuple("Config", ["authorization", "concurrency", "timeout"])


class DigestMap(dict):
    """
    Tag name to digest mapping, as returned by fetch_all().

    Tags whose manifest request failed in transport (and were recorded rather
    than aborting the operation) are absent from the mapping, their failure
    message is kept in the 'failures' dictionary instead.
    """

    def __init__(self, *args, **dargs) -> None:
        super().__init__(*args, **dargs)
        self.failures = dict()


def load_config() -> Config:
    """Return a Config with values (or defaults) from the environment."""
    return Config(
        authorization=env.str("REGISTRY_AUTH", default=""),
        concurrency=env.int("REGISTRY_TAGS_CONCURRENCY", default=DEFAULT_CONCURRENCY),
        timeout=env.float("REGISTRY_TAGS_TIMEOUT", default=DEFAULT_TIMEOUT))


def validate_concurrency(concurrency: int) -> int:
    """Return concurrency if within [MIN_CONCURRENCY, MAX_CONCURRENCY], or raise."""
    if isinstance(concurrency, bool) or not isinstance(concurrency, int):
        raise ValidationError(f"Concurrency must be an integer, not {concurrency!r}")
    if concurrency < MIN_CONCURRENCY:
        raise ValidationError(f"Concurrency could not be lower than {MIN_CONCURRENCY}")
    if concurrency > MAX_CONCURRENCY:
        raise ValidationError(f"Concurrency could not be higher than {MAX_CONCURRENCY}")
    return concurrency


def validate_policy(on_transport_error: str) -> str:
    """Return on_transport_error if it names a known policy, or raise."""
    if on_transport_error not in TRANSPORT_POLICIES:
        expected = "' or '".join(TRANSPORT_POLICIES)
        raise ValidationError(f"Transport error policy must be '{expected}',"
                              f" not {on_transport_error!r}")
    return on_transport_error


def authorization_scheme(authorization: str) -> str:
    """Return only the scheme word of an Authorization header value, safe to log."""
    fields = authorization.split(maxsplit=1)
    if not fields:
        return "no"
    return fields[0]


def batch_sizes(count: int, limit: int) -> list:
    """
    Return the size of every batch needed to process count items, in order.

    All batches hold limit items, except the last which holds the remainder
    (count mod limit) when there is one.
    """
    total, remain = divmod(count, limit)
    sizes = [limit] * total
    if remain:
        sizes.append(remain)
    return sizes


def batches(tag_names, limit):
    """Yield contiguous slices of tag_names, in order, as sized by batch_sizes()."""
    start = 0
    for size in batch_sizes(len(tag_names), limit):
        yield tag_names[start:start + size]
        start += size


def request_headers(authorization: str) -> dict:
    """Return headers common to every registry request."""
    return {"Authorization": authorization,
            "Accept": ", ".join(ACCEPT_TYPES)}


def describe(xcpt: BaseException) -> str:
    """Some aiohttp exceptions stringify empty, always include the class name."""
    detail = str(xcpt)
    if detail:
        return f"{xcpt.__class__.__name__}: {detail}"
    return xcpt.__class__.__name__


def parse_tag_names(body: bytes) -> TagListing:
    """Decode a tags/list response body, reporting (not raising) malformed content."""
    # ValueError covers JSONDecodeError and UnicodeDecodeError, RecursionError
    # comes from overly nested documents.
    try:
        data = json.loads(body)
    except (ValueError, RecursionError) as xcpt:
        return TagListing([], f"Undecodable tag list: {xcpt}")
    if not isinstance(data, dict):
        return TagListing([], f"Expected a JSON object, not {type(data).__name__}")
    # Some registries send null instead of [] for a repository without tags
    names = data.get("tags")
    if names is None:
        return TagListing([], None)
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        return TagListing([], "Expected 'tags' to be a list of strings")
    # An empty name can't be looked up, skip it but keep the others
    return TagListing([n for n in names if n], None)


async def list_tag_names(session, registry: str, repository: str,
                         authorization: str) -> TagListing:
    """Return the TagListing for repository, raise ListError if unreachable."""
    url = f"https://{registry}/v2/{repository}/tags/list"
    try:
        async with session.get(url, headers=request_headers(authorization)) as response:
            if response.status != 200:
                raise ListError(f"Bad response status: {response.status}"
                                f" {response.reason} >> {url}")
            body = await response.read()
    except (ClientError, asyncio.TimeoutError) as xcpt:
        raise ListError(f"Request failed: {describe(xcpt)} >> {url}") from xcpt
    return parse_tag_names(body)


async def fetch_digest(session, registry: str, repository: str, tag: str,
                       authorization: str) -> DigestResult:
    """
    Look up the manifest digest of one tag.

    Never raises for request failures.  The returned DigestResult carries a
    TransportFailure for connection problems or a non-200 status, or a
    DigestHeaderMissing when the registry did not send DIGEST_HEADER.
    """
    url = f"https://{registry}/v2/{repository}/manifests/{tag}"
    try:
        async with session.get(url, headers=request_headers(authorization)) as response:
            if response.status != 200:
                msg = f"Bad response status: {response.status} {response.reason} >> {url}"
                return DigestResult(tag, None, TransportFailure(tag, msg))
            digest = response.headers.get(DIGEST_HEADER)
    except (ClientError, asyncio.TimeoutError) as xcpt:
        msg = f"Request failed: {describe(xcpt)} >> {url}"
        return DigestResult(tag, None, TransportFailure(tag, msg))

    if digest is None:
        msg = f"header '{DIGEST_HEADER}' not found in HTTP response >> {url}"
        return DigestResult(tag, None, DigestHeaderMissing(tag, msg))
    return DigestResult(tag, digest, None)


async def run_batch(batch, fetch, digests: DigestMap, on_transport_error: str) -> None:
    """Fetch every tag in batch concurrently, merging each result into digests."""
    # Start everything before awaiting anything.  Python docs say to retain a
    # reference to all tasks so they aren't "garbage-collected" while active.
    pending = [asyncio.create_task(fetch(tag)) for tag in batch]
    try:
        for next_done in asyncio.as_completed(pending):
            result = await next_done
            if result.ok:
                digests[result.tag] = result.digest
            elif isinstance(result.error, TransportFailure) and on_transport_error == "record":
                warn(f"Recording failure for tag '{result.tag}': {result.error}")
                digests.failures[result.tag] = str(result.error)
            else:
                raise result.error
    finally:
        # No-op once the batch settled, otherwise stops abandoned requests.
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def fetch_all(tag_names, concurrency: int, fetch,
                    on_transport_error: str = "record") -> DigestMap:
    """
    Return a DigestMap for tag_names, fetching no more than concurrency at once.

    fetch is a coroutine function taking a tag name and returning a
    DigestResult.  Batches run strictly one after another, the next batch
    starts only after every fetch of the current one has finished.

    Any DigestHeaderMissing (or a TransportFailure when on_transport_error is
    "abort") aborts the whole operation: the rest of the batch is cancelled,
    all results gathered so far are discarded and the error is raised.
    """
    limit = validate_concurrency(concurrency)
    validate_policy(on_transport_error)
    tag_names = list(tag_names)
    batch_total = len(batch_sizes(len(tag_names), limit))
    digests = DigestMap()
    for number, batch in enumerate(batches(tag_names, limit), start=1):
        dbg(f"Fetching batch {number} of {batch_total} ({len(batch)} tags)")
        await run_batch(batch, fetch, digests, on_transport_error)
    return digests


async def fetch_remote_tags(registry: str, repository: str, authorization: str,
                            concurrency: int, on_transport_error: str = "record",
                            session=None, timeout: float = DEFAULT_TIMEOUT) -> DigestMap:
    """
    Return a DigestMap of every tag in repository on registry.

    A new ClientSession using timeout (total seconds per request) is opened
    unless session is given, in which case timeout is not used and the
    session's own timeout applies.
    """
    validate_concurrency(concurrency)
    validate_policy(on_transport_error)
    if session is None:
        async with ClientSession(timeout=ClientTimeout(total=timeout)) as session:
            return await fetch_remote_tags(registry, repository, authorization,
                                           concurrency, on_transport_error, session)

    scheme = authorization_scheme(authorization)
    dbg(f"Listing tags of '{registry}/{repository}' with {scheme} authorization")
    listing = await list_tag_names(session, registry, repository, authorization)
    if listing.error is not None:
        warn(f"Treating tag list of '{registry}/{repository}' as empty: {listing.error}")
    dbg(f"Found {len(listing.names)} tags, fetching up to {concurrency} digests at once")
    fetch = partial(fetch_digest, session, registry, repository,
                    authorization=authorization)
    return await fetch_all(listing.names, concurrency, fetch, on_transport_error)


def get_remote_tags(registry: str, repository: str, authorization: str,
                    concurrency: int, on_transport_error: str = "record",
                    timeout: float = DEFAULT_TIMEOUT) -> DigestMap:
    """Blocking wrapper around fetch_remote_tags()."""
    return asyncio.run(fetch_remote_tags(registry, repository, authorization,
                                         concurrency, on_transport_error,
                                         timeout=timeout))


def render(digests: DigestMap, fmt: str = "text") -> str:
    """Return digests formatted for output, sorted by tag name."""
    if fmt == "yaml":
        doc = {"tags": dict(digests), "failures": dict(digests.failures)}
        return yaml.safe_dump(doc, default_flow_style=False)
    return "".join(f"{tag} {digests[tag]}\n" for tag in sorted(digests))


def get_args(argv, config: Config):
    """Return parsed argument namespace object."""
    parser = ArgumentParser(prog="registry_tags", description=__doc__.strip().splitlines()[0])
    parser.add_argument('-v', '--verbose',
                        dest='verbose', action='store_true', default=False,
                        help='Show warnings, e.g. about tags recorded as failed.')
    parser.add_argument('--debug',
                        dest='debug', action='store_true', default=False,
                        help="Enable output of debugging messages.")
    parser.add_argument('-c', '--concurrency',
                        dest='concurrency', type=int, default=config.concurrency,
                        metavar='<N>',
                        help=(f"Number of manifest requests in flight at once,"
                              f" {MIN_CONCURRENCY} to {MAX_CONCURRENCY}"
                              f" (default: {config.concurrency})."))
    parser.add_argument('--abort-on-transport-error',
                        dest='on_transport_error', action='store_const',
                        const="abort", default="record",
                        help="Fail when any manifest request fails, instead of reporting it.")
    parser.add_argument('--format',
                        dest='format', choices=("text", "yaml"), default="text",
                        help="Output format (default: text).")
    parser.add_argument('registry', metavar='<registry>',
                        help="Registry host[:port], e.g. quay.io")
    parser.add_argument('repository', metavar='<repository>',
                        help="Repository path within registry, e.g. podman/stable")
    parsed = parser.parse_args(args=argv[1:])

    if config.authorization.strip() == "":
        parser.error("Expecting $REGISTRY_AUTH to be defined/non-empty")
    return parsed


def setup_logging(verbose: bool, debug: bool) -> None:
    """Configure root logger format and level."""
    # loc will be added at dbg()/warn()/err() call time.
    logging.basicConfig(format='{levelname}: {message} {loc}', style='{')
    logger = logging.getLogger()
    for handler in logger.handlers:
        handler.addFilter(default_loc)
    if debug:
        logger.setLevel(logging.DEBUG)
        dbg("Debugging enabled")
    elif verbose:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.ERROR)


def main(argv=None) -> None:  # noqa: D103
    if argv is None:
        argv = sys.argv
    try:
        config = load_config()
    except ValueError as xcpt:
        err(f"Invalid environment setting: {xcpt}")
    args = get_args(argv, config)
    setup_logging(args.verbose, args.debug)

    try:
        digests = get_remote_tags(args.registry, args.repository, config.authorization,
                                  args.concurrency, args.on_transport_error,
                                  timeout=config.timeout)
    except RegistryTagsError as xcpt:
        err(str(xcpt))

    if args.format == "text":
        for tag in sorted(digests.failures):
            sys.stderr.write(f"{tag} ERROR: {digests.failures[tag]}\n")
    sys.stdout.write(render(digests, args.format))


if __name__ == "__main__":
    main(sys.argv)
