#!/usr/bin/env python3
"""
Trac → Codebase Ticket Import
=============================
Uploads tickets from a Trac CSV export into a CodebaseHQ project, using the
Codebase XML API.

Process: export the Trac tickets as a CSV. If the Codebase project to write
to is 'foo', then either:

    python cbhq_ticket_import.py -d foo-trac.csv foo    # dry-run only
    python cbhq_ticket_import.py -a foo-trac.csv foo    # actual upload

Field mapping:
  Trac type       → Codebase ticket-type   (translated)
  Trac reporter   → Codebase reporter-id   (matched by email)
  Trac owner      → Codebase assignee-id   (matched by email)
  Trac component  → Codebase category-id   (matched by name)
  Trac priority   → Codebase priority-id   (translated, then matched by name)
  Trac status     → Codebase status-id     (translated, then matched by name)
  Trac milestone  → Codebase milestone-id  (matched by name, optional)

Credentials come from CODEBASE_USER and CODEBASE_API_TOKEN (environment or a
.env file in the working directory).
"""

import sys
import os
import csv
import base64
import logging
import argparse
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

import requests
from dotenv import load_dotenv
from lxml import etree

# ═════════════════════════════════════════════════════════════════════════════
#  CONFIGURATION
# ═════════════════════════════════════════════════════════════════════════════

DEFAULT_API_URL  = "https://api3.codebasehq.com"
DEFAULT_LOG_FILE = "codebase.log"
USER_AGENT       = "cbhq-ticket-import"
CSV_FIELD_SIZE_LIMIT = 2 ** 31 - 1

# Reference collections downloaded once per run:
#   attribute on ReferenceData → (path under the project, collection name)
REFERENCE_COLLECTIONS: dict = {
    "statuses":   ("tickets/statuses",   "ticketing_statuses"),
    "priorities": ("tickets/priorities", "ticketing_priorities"),
    "categories": ("tickets/categories", "ticketing_categories"),
    "users":      ("assignments",        "users"),
    "milestones": ("milestones",         "ticketing_milestone"),
}

# Trac ticket type  →  Codebase ticket-type
TICKET_TYPE_TRANSLATIONS: dict = {
    "defect":      "bug",
    "enhancement": "enhancement",
    "task":        "task",
}

# Trac priority  →  Codebase priority name
PRIORITY_TRANSLATIONS: dict = {
    "critical":   "Critical",
    "major":      "High",
    "minor":      "Normal",
    "trivial":    "Low",
    "irritating": "Normal",
}

# Trac status  →  Codebase status name
STATUS_TRANSLATIONS: dict = {
    "closed":   "Completed",
    "accepted": "Accepted",
    "new":      "New",
    "assigned": "Accepted",
    "reopened": "In Progress",
}
# ═════════════════════════════════════════════════════════════════════════════

USAGE = "%(prog)s (-d | -a) <file> <project-name>"

log = logging.getLogger("cbhq_ticket_import")


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ErrorKind(Enum):
    USER_NOT_FOUND      = "user-not-found"
    CATEGORY_NOT_FOUND  = "category-not-found"
    PRIORITY_NOT_FOUND  = "priority-not-found"
    STATUS_NOT_FOUND    = "status-not-found"
    MILESTONE_NOT_FOUND = "milestone-not-found"
    NOT_TRANSLATED      = "not-translated"
    INVALID_TEXT        = "invalid-text"
    UPLOAD_REJECTED     = "upload-rejected"


_NOT_FOUND_KINDS: dict = {
    "category":  ErrorKind.CATEGORY_NOT_FOUND,
    "priority":  ErrorKind.PRIORITY_NOT_FOUND,
    "status":    ErrorKind.STATUS_NOT_FOUND,
    "milestone": ErrorKind.MILESTONE_NOT_FOUND,
}


class CodebaseAPIError(Exception):
    """Transport-level failure talking to the Codebase API."""


class TicketImportError(Exception):
    """A failure attributable to a single CSV row; the batch carries on."""

    def __init__(self, kind: ErrorKind, message: str,
                 field_name: Optional[str] = None, value: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind  = kind
        self.field = field_name
        self.value = value


# ─────────────────────────────────────────────────────────────────────────────
# Configuration & logging
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Config:
    user:      str
    api_token: str
    api_url:   str = DEFAULT_API_URL
    log_file:  str = DEFAULT_LOG_FILE

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        """
        Read credentials from the environment (after loading .env, if any).
        Raises ValueError naming the missing variables.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ
        user  = (environ.get("CODEBASE_USER") or "").strip()
        token = (environ.get("CODEBASE_API_TOKEN") or "").strip()
        missing = [name for name, value in (("CODEBASE_USER", user),
                                            ("CODEBASE_API_TOKEN", token)) if not value]
        if missing:
            raise ValueError(f"missing environment variable(s): {', '.join(missing)}")
        return cls(
            user=user,
            api_token=token,
            api_url=environ.get("CODEBASE_API_URL") or DEFAULT_API_URL,
            log_file=environ.get("CODEBASE_LOG_FILE") or DEFAULT_LOG_FILE,
        )


def setup_logging(path: str) -> None:
    if log.handlers:
        return
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    log.propagate = False


# ─────────────────────────────────────────────────────────────────────────────
# Codebase XML API client
# ─────────────────────────────────────────────────────────────────────────────

def _tag(element) -> str:
    return element.tag.replace("-", "_")


def parse_collection(xml: bytes) -> list:
    """
    Turn a Codebase collection document into a list of dicts, e.g.:
      <ticketing-statuses><ticketing-status><id>1</id><name>New</name>…
      → [{"id": "1", "name": "New", …}]
    Field values are kept as text, verbatim apart from the id; nested elements
    are ignored. An entry without an id is rejected.
    """
    try:
        root = etree.fromstring(xml)
    except etree.XMLSyntaxError as exc:
        raise CodebaseAPIError(f"Unparseable XML from Codebase: {exc}")
    items = []
    for entity in root:
        if not isinstance(entity.tag, str):
            continue   # comments / processing instructions
        item = {}
        for child in entity:
            if isinstance(child.tag, str) and len(child) == 0:
                item[_tag(child)] = child.text or ""
        if not item.get("id", "").strip():
            raise CodebaseAPIError(f"Codebase <{entity.tag}> entry without an id: {item!r}")
        item["id"] = item["id"].strip()
        items.append(item)
    return items


class CodebaseClient:
    def __init__(self, user: str, api_token: str, base_url: str = DEFAULT_API_URL) -> None:
        self.base = base_url.rstrip("/")
        raw = f"{user}:{api_token}".encode()
        self._auth = "Basic " + base64.b64encode(raw).decode()

    def _request(self, method: str, path: str, *,
                 body: Optional[bytes] = None,
                 expected=(200, 201)) -> requests.Response:
        url = f"{self.base}/{path.lstrip('/')}"
        headers = {
            "Authorization": self._auth,
            "Accept":        "application/xml",
            "User-Agent":    USER_AGENT,
        }
        if body is not None:
            headers["Content-Type"] = "application/xml"
        log.info("%s %s", method, url)
        try:
            resp = requests.request(method, url, headers=headers, data=body)
        except requests.exceptions.ConnectionError:
            raise CodebaseAPIError(f"Connection error: {url}")
        except requests.exceptions.RequestException as exc:
            raise CodebaseAPIError(f"{method} {path} failed: {exc}")
        log.info("%s %s → %s", method, url, resp.status_code)
        if resp.status_code == 401:
            raise CodebaseAPIError("Codebase authentication failed (401).")
        if resp.status_code == 403:
            raise CodebaseAPIError(f"Codebase permission denied (403): {method} {path}")
        if resp.status_code not in expected:
            log.warning("%s %s body: %s", method, url, resp.text[:400])
            raise CodebaseAPIError(
                f"Codebase {resp.status_code} {method} {path}: {resp.text[:400]}")
        return resp

    def get_collection(self, project: str, path: str) -> list:
        resp = self._request("GET", f"/{project}/{path}", expected=(200,))
        return parse_collection(resp.content)

    def create_ticket(self, project: str, payload: str) -> requests.Response:
        return self._request("POST", f"/{project}/tickets",
                             body=payload.encode("utf-8"))


# ─────────────────────────────────────────────────────────────────────────────
# Reference data
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReferenceData:
    statuses:   list = field(default_factory=list)
    priorities: list = field(default_factory=list)
    categories: list = field(default_factory=list)
    users:      list = field(default_factory=list)
    milestones: list = field(default_factory=list)


def load_reference_data(client: CodebaseClient, project: str) -> ReferenceData:
    """
    Download every reference collection for `project`, one request each, in
    the order of REFERENCE_COLLECTIONS. Any failure propagates as
    CodebaseAPIError; there is no partial result.
    """
    loaded = {}
    for attr, (path, _name) in REFERENCE_COLLECTIONS.items():
        loaded[attr] = client.get_collection(project, path)
    return ReferenceData(**loaded)


def print_reference_data(refs: ReferenceData) -> None:
    print("This is what we got back from Codebase:")
    for attr, (_path, name) in REFERENCE_COLLECTIONS.items():
        print(f"  {name}: {getattr(refs, attr)!r}")


# ─────────────────────────────────────────────────────────────────────────────
# Row mapping
# ─────────────────────────────────────────────────────────────────────────────

def _optional(value: Optional[str]) -> Optional[str]:
    return value if value else None


@dataclass(frozen=True)
class SourceRecord:
    summary:     Optional[str]
    type:        Optional[str]
    reporter:    Optional[str]
    owner:       Optional[str]
    component:   Optional[str]
    priority:    Optional[str]
    status:      Optional[str]
    description: Optional[str] = None
    milestone:   Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "SourceRecord":
        return cls(
            summary=row.get("summary"),
            type=row.get("type"),
            reporter=row.get("reporter"),
            owner=row.get("owner"),
            component=row.get("component"),
            priority=row.get("priority"),
            status=row.get("status"),
            description=_optional(row.get("description")),
            milestone=_optional(row.get("milestone")),
        )


@dataclass(frozen=True)
class DestinationTicket:
    summary:      str
    ticket_type:  str
    reporter_id:  str
    assignee_id:  str
    category_id:  str
    priority_id:  str
    status_id:    str
    description:  Optional[str] = None
    milestone_id: Optional[str] = None


def translate(table: dict, prompt: str, value: Optional[str]) -> str:
    translated = table.get(value)
    if translated is None:
        raise TicketImportError(ErrorKind.NOT_TRANSLATED,
                                f"No translation for {prompt} {value}", prompt, value)
    return translated


def user_id_for_email(users: list, email: Optional[str]) -> str:
    for user in users:
        if user.get("email_address") == email:
            return user["id"]
    raise TicketImportError(ErrorKind.USER_NOT_FOUND,
                            f"Unknown user email {email}", "user", email)


def find_id_by_name(items: list, prompt: str, name: Optional[str],
                    translation_table: Optional[dict] = None) -> str:
    """
    Return the id of the entry in `items` called `name`. With a
    translation_table, `name` is translated first and an unknown source
    value raises NOT_TRANSLATED.
    """
    if translation_table is not None:
        name = translate(translation_table, prompt, name)
    for item in items:
        if item.get("name") == name:
            return item["id"]
    raise TicketImportError(_NOT_FOUND_KINDS[prompt],
                            f"Unknown {prompt} {name}", prompt, name)


def map_record(record: SourceRecord, refs: ReferenceData) -> DestinationTicket:
    fields = {
        "summary":     record.summary or "",
        "description": record.description,
        "ticket_type": translate(TICKET_TYPE_TRANSLATIONS, "type", record.type),
        "reporter_id": user_id_for_email(refs.users, record.reporter),
        "assignee_id": user_id_for_email(refs.users, record.owner),
        "category_id": find_id_by_name(refs.categories, "category", record.component),
        "priority_id": find_id_by_name(refs.priorities, "priority", record.priority,
                                       PRIORITY_TRANSLATIONS),
        "status_id":   find_id_by_name(refs.statuses, "status", record.status,
                                       STATUS_TRANSLATIONS),
    }
    if record.milestone:
        fields["milestone_id"] = find_id_by_name(refs.milestones, "milestone",
                                                 record.milestone)
    return DestinationTicket(**fields)


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

def _literal_text(parent, tag: str, text: str) -> None:
    # CDATA cannot contain its own terminator; escaped text round-trips the same.
    el = etree.SubElement(parent, tag)
    el.text = text if "]]>" in text else etree.CDATA(text)


def ticket_to_xml(ticket: DestinationTicket) -> str:
    root = etree.Element("ticket")
    try:
        _literal_text(root, "summary", ticket.summary)
        if ticket.description is not None:
            _literal_text(root, "description", ticket.description)
    except ValueError as exc:
        raise TicketImportError(ErrorKind.INVALID_TEXT,
                                f"Text cannot be represented in XML: {exc}")
    for tag, value in (
        ("ticket-type", ticket.ticket_type),
        ("reporter-id", ticket.reporter_id),
        ("assignee-id", ticket.assignee_id),
        ("category-id", ticket.category_id),
        ("priority-id", ticket.priority_id),
        ("status-id",   ticket.status_id),
    ):
        etree.SubElement(root, tag).text = value
    if ticket.milestone_id is not None:
        etree.SubElement(root, "milestone-id").text = ticket.milestone_id
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8",
                          pretty_print=True).decode("utf-8")


def upload_ticket(client: CodebaseClient, project: str, payload: str,
                  dry_run: bool) -> None:
    if dry_run:
        print(payload)
        return
    try:
        client.create_ticket(project, payload)
    except CodebaseAPIError as exc:
        raise TicketImportError(ErrorKind.UPLOAD_REJECTED, str(exc))


# ─────────────────────────────────────────────────────────────────────────────
# Batch
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class BatchReport:
    processed: int = 0
    succeeded: int = 0
    failures:  list = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


def read_source_records(path: str) -> Iterator[SourceRecord]:
    # Trac descriptions can be far longer than the csv module's default field limit.
    csv.field_size_limit(CSV_FIELD_SIZE_LIMIT)
    with open(path, encoding="utf-8-sig", newline="") as fh:
        for row in csv.DictReader(fh):
            yield SourceRecord.from_row(row)


def run_batch(records, refs: ReferenceData, client: CodebaseClient,
              project: str, dry_run: bool) -> BatchReport:
    """
    Map and upload each record in order. A TicketImportError stops only the
    row it came from: the row index, the reason and whatever was about to be
    sent are printed, and the next row is processed.
    """
    report = BatchReport()
    for n, record in enumerate(records):
        report.processed += 1
        payload = None
        try:
            payload = ticket_to_xml(map_record(record, refs))
            upload_ticket(client, project, payload, dry_run)
        except TicketImportError as exc:
            log.warning("row %d failed (%s): %s", n, exc.kind.value, exc)
            report.failures.append({"row": n, "kind": exc.kind, "reason": str(exc)})
            print(f"Failed update on row {n}")
            print(f"  FAIL  [{exc.kind.value}]  {exc}")
            print(f"{payload if payload is not None else record!r}\n-----------------")
            continue
        report.succeeded += 1
        if not dry_run:
            print(f"  OK    row {n}  |  {(record.summary or '')[:60]}")
    return report


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        usage=USAGE,
        description="Upload tickets from a Trac CSV export to a Codebase project.",
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("-d", dest="dry_run", action="store_true",
                      help="dry run: print the ticket XML, change nothing")
    mode.add_argument("-a", dest="apply", action="store_true",
                      help="apply: create the tickets in Codebase")
    parser.add_argument("file", help="Trac CSV export")
    parser.add_argument("project", help="Codebase project permalink")
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not os.path.isfile(args.file):
        parser.error(f"No such file: {args.file}")
    return args


def main(argv=None) -> None:
    args = parse_args(argv)

    try:
        config = Config.from_env()
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    setup_logging(config.log_file)

    client = CodebaseClient(config.user, config.api_token, config.api_url)
    try:
        refs = load_reference_data(client, args.project)
    except CodebaseAPIError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.dry_run:
        print_reference_data(refs)

    try:
        report = run_batch(read_source_records(args.file), refs, client,
                           args.project, args.dry_run)
    except (UnicodeDecodeError, csv.Error, OSError) as exc:
        print(f"Error: reading {args.file}: {exc}")
        sys.exit(1)
    print(f"\n  Rows processed: {report.processed}  ok: {report.succeeded}  "
          f"failed: {report.failed}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n\nAborted.")
        sys.exit(0)
