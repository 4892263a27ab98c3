#!/usr/bin/python3
import argparse
import csv
import getpass
import json
import math
import os
import sys
import tempfile
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

from dotenv import find_dotenv

import zeronorth

_INVENTORY_RESOURCES = ("targets", "policies", "applications", "users", "syntheticIssues", "jobs")
_EXIT_FINISHED_STATUS = "FINISHED"
_SECRET_PASSWORD_ENV = "ZN_SECRET_PASSWORD"


def _json_default(obj):
    as_dict = getattr(obj, "as_dict", None)
    if callable(as_dict):
        return as_dict()
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def _parse_http_timeout(value: str) -> tuple[float, float]:
    """`--http-timeout`: "read" seconds (connect stays at 10) or "connect,read"."""
    parts = [p.strip() for p in (value or "").split(",")]
    if len(parts) > 2 or not all(parts):
        raise ValueError(f"invalid timeout: {value!r}")
    seconds = [float(p) for p in parts]
    if len(seconds) == 1:
        seconds.insert(0, 10.0)
    if not all(math.isfinite(s) and s > 0 for s in seconds):
        raise ValueError("timeouts must be finite and > 0")
    return (seconds[0], seconds[1])


def _parse_run_options(value: str) -> dict | None:
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("run options must be a JSON object")
    return parsed


def _find_dotenv_path() -> Path | None:
    # The file python-dotenv itself would load, searching up from the working directory.
    found = find_dotenv(usecwd=True)
    return Path(found) if found else None


def _cli_version() -> str:
    # Installed distribution version first; a plain checkout falls back to the module constant.
    try:
        return pkg_version("zeronorth")
    except PackageNotFoundError:
        return str(zeronorth._VERSION)


def _atomic_write_text(path: Path, data: str, *, encoding: str = "utf-8") -> None:
    """
    Write to a temp file in the destination directory, then replace the final path, so an
    interrupted run never leaves a partially-written output file.
    """
    tmp_fh, tmp_path = _atomic_open_text(path, encoding=encoding, newline="\n")
    _finish_atomic(tmp_fh, tmp_path, path, lambda fh: fh.write(data))


def _atomic_open_text(path: Path, *, encoding: str = "utf-8", newline: str | None = None):
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        newline=newline,
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    return tmp_fh, Path(tmp_fh.name)


def _finish_atomic(tmp_fh, tmp_path: Path, path: Path, write) -> None:
    try:
        with tmp_fh:
            write(tmp_fh)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                # Some filesystems do not support fsync; the rename is still atomic.
                pass
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_json(path: Path | None, payload, *, pretty: bool = True) -> None:
    if pretty:
        data = json.dumps(payload, indent=2, default=_json_default, sort_keys=True)
    else:
        data = json.dumps(payload, default=_json_default, sort_keys=True, separators=(",", ":"))
    if path is None:
        sys.stdout.write(data + "\n")
    else:
        _atomic_write_text(path, data + "\n")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    if path is None:
        for line in lines:
            sys.stdout.write(str(line) + "\n")
        return
    _atomic_write_text(path, "".join(f"{line}\n" for line in lines))


def _write_csv(
    path: Path | None,
    rows: list[dict],
    *,
    columns: list[str],
    delimiter: str = ",",
    headers: bool = True,
) -> None:
    def write_rows(out_fh) -> None:
        writer = csv.DictWriter(
            out_fh, fieldnames=columns, extrasaction="ignore", delimiter=delimiter, lineterminator="\n"
        )
        if headers:
            writer.writeheader()
        for row in rows:
            cooked = {}
            for k in columns:
                v = row.get(k)
                if isinstance(v, (dict, list)):
                    cooked[k] = json.dumps(v, default=_json_default, sort_keys=True)
                else:
                    cooked[k] = "" if v is None else v
            writer.writerow(cooked)

    if path is None:
        write_rows(sys.stdout)
        return
    tmp_fh, tmp_path = _atomic_open_text(path, encoding="utf-8", newline="")
    _finish_atomic(tmp_fh, tmp_path, path, write_rows)


def _resolve_out_path(value: str) -> Path | None:
    if not value or value == "-":
        return None
    return Path(value)


def _resolve_cli_log_level(args) -> str:
    if getattr(args, "log_level", ""):
        return args.log_level
    if getattr(args, "verbose", 0) >= 2:
        return "DEBUG"
    if getattr(args, "quiet", False):
        return "WARNING"
    return "INFO"


def _plain_timestamp(value) -> str:
    """
    Render an ISO-8601 string or an epoch (seconds or milliseconds) as `YYYY-MM-DD HH:MM:SS` UTC.
    """
    if value is None or value == "" or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        if value <= 0:
            return ""
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    text = str(value).strip()
    return text.split(".", 1)[0].replace("T", " ").rstrip("Z")


def _first(values) -> dict:
    if isinstance(values, list) and values and isinstance(values[0], dict):
        return values[0]
    return {}


def _target_row(item: dict) -> dict:
    data = item.get("data") or {}
    return {
        "id": item.get("id"),
        "name": data.get("name"),
        "created": _plain_timestamp((item.get("meta") or {}).get("created")),
        "environmentType": data.get("environmentType"),
        "tags": ",".join(data.get("tags") or []),
    }


def _policy_row(item: dict) -> dict:
    data = item.get("data") or {}
    target = _first(data.get("targets"))
    scenario = _first(data.get("scenarios"))
    return {
        "id": item.get("id"),
        "name": data.get("name"),
        "targetId": target.get("id"),
        "targetName": target.get("targetName") or target.get("name"),
        "environmentType": data.get("environmentType"),
        "scenarioId": scenario.get("id"),
        "scenarioName": scenario.get("name"),
    }


def _application_row(item: dict) -> dict:
    data = item.get("data") or {}
    return {
        "id": item.get("id"),
        "name": data.get("name"),
        "created": _plain_timestamp((item.get("meta") or {}).get("created")),
        "targetCount": len(data.get("targetIds") or data.get("targets") or []),
    }


def _user_row(item: dict) -> dict:
    data = item.get("data") or {}
    roles = [
        str(r.get("role"))
        for r in ((data.get("auth") or {}).get("universal") or [])
        if isinstance(r, dict) and r.get("role")
    ]
    return {
        "id": item.get("id"),
        "name": data.get("name"),
        "email": data.get("email"),
        "role": ",".join(roles),
        "enabled": data.get("isEnabled"),
    }


def _issue_row(item: dict) -> dict:
    data = item.get("data") or {}
    refs = data.get("referenceIdentifiers") or []
    return {
        "id": item.get("id"),
        "product": _first(data.get("issueJobs")).get("product"),
        "key": data.get("key"),
        "issueName": data.get("issueName"),
        "severity": data.get("severity"),
        "severityCode": data.get("severityCode"),
        "status": data.get("status"),
        "ignore": data.get("ignore"),
        "detectionDate": _plain_timestamp(data.get("detectionDate")),
        "remediationDate": _plain_timestamp(data.get("remediationDate")),
        "referenceIdentifiers": ",".join(
            str(r.get("value") if isinstance(r, dict) else r) for r in refs
        ),
    }


def _job_row(item: dict) -> dict:
    data = item.get("data") or {}
    return {
        "created": _plain_timestamp((item.get("meta") or {}).get("created")),
        "lastModified": _plain_timestamp((item.get("meta") or {}).get("lastModified")),
        "id": item.get("id"),
        "status": data.get("status"),
        "policyId": data.get("policyId"),
        "policyName": data.get("policyName"),
    }


_ROW_BUILDERS = {
    "targets": (["id", "name", "created", "environmentType", "tags"], _target_row),
    "policies": (
        ["id", "name", "targetId", "targetName", "environmentType", "scenarioId", "scenarioName"],
        _policy_row,
    ),
    "applications": (["id", "name", "created", "targetCount"], _application_row),
    "users": (["id", "name", "email", "role", "enabled"], _user_row),
    "syntheticIssues": (
        [
            "id",
            "product",
            "key",
            "issueName",
            "severity",
            "severityCode",
            "status",
            "ignore",
            "detectionDate",
            "remediationDate",
            "referenceIdentifiers",
        ],
        _issue_row,
    ),
    "jobs": (["created", "lastModified", "id", "status", "policyId", "policyName"], _job_row),
}


def _describe_error(e: Exception) -> str:
    if isinstance(e, zeronorth.ApiError):
        parts = [f"status={e.status_code}", f"message={e.message}"]
        if e.payload is not None:
            parts.append(f"payload={json.dumps(e.payload, sort_keys=True, default=_json_default)}")
        text = " ".join(parts)
    else:
        text = str(e)
    return zeronorth.redact_sensitive_text(text)


def _add_common_args(p: argparse.ArgumentParser, *, out: bool = True) -> None:
    p.add_argument(
        "--key-file",
        default=None,
        help="File holding the API key (default: env API_KEY, which may also be a file path)",
    )
    p.add_argument(
        "--api-root",
        default=None,
        help=f"API root URL (default: env ZN_API_ROOT or {zeronorth.DEFAULT_API_ROOT})",
    )
    p.add_argument(
        "--http-timeout",
        type=_parse_http_timeout,
        default=None,
        help="HTTP timeouts in seconds: 'read' or 'connect,read' (default: 10,120)",
    )
    p.add_argument("--no-retry", action="store_true", help="Disable HTTP retry/backoff (default: enabled)")
    p.add_argument(
        "--max-retry",
        type=int,
        default=None,
        help="Max attempts for idempotent requests when retry is enabled (default: 3)",
    )
    p.add_argument(
        "--backoff-max-s",
        type=float,
        default=None,
        help="Max backoff sleep seconds between retries (default: 30)",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; -vv enables DEBUG)",
    )
    p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/-q.",
    )
    if out:
        p.add_argument("--out", default="", help="Output path (default: stdout)")


def _add_wait_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--poll-interval-s",
        type=float,
        default=3.0,
        help="Seconds between job status checks (default: 3)",
    )
    p.add_argument(
        "--timeout-s",
        type=float,
        default=zeronorth.DEFAULT_JOB_TIMEOUT_S,
        help="Give up waiting after this many seconds; 0 waits forever (default: 3600)",
    )
    p.add_argument(
        "--max-polls",
        type=int,
        default=0,
        help="Give up after this many status checks; 0 means no limit (default: 0)",
    )
    p.add_argument("--format", choices=["text", "json"], default="text", help="Output format (default: text)")


def _add_destructive_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--dry-run", action="store_true", help="Only report what would change")
    p.add_argument("--yes", action="store_true", help="Confirm the change (required unless --dry-run)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="zeronorth",
        description="Idempotent resource and job automation for the ZeroNorth REST API.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    doctor = sub.add_parser("doctor", help="Credential/config sanity checks (non-destructive)")
    doctor.add_argument("--format", choices=["json", "text"], default="json", help="Output format (default: json)")
    doctor.add_argument(
        "--probe",
        action="store_true",
        help="Call accounts/me to confirm the API key is accepted",
    )
    _add_common_args(doctor)

    whoami = sub.add_parser("whoami", help="Print the customer (tenant) name of the API key")
    _add_common_args(whoami)

    find = sub.add_parser("find", help="Print the ID of the resource with this exact name")
    find.add_argument("resource", choices=sorted(zeronorth.RESOURCE_TYPES))
    find.add_argument("name")
    _add_common_args(find)

    targets = sub.add_parser("targets", help="Target operations")
    targets_sub = targets.add_subparsers(dest="targets_cmd", required=True)

    t_ensure = targets_sub.add_parser("ensure", help="Look up a target by name, creating it when absent")
    t_ensure.add_argument("name")
    t_ensure.add_argument("--integration-id", required=True, help="Integration (environment) ID")
    t_ensure.add_argument("--tags", default="", help="Comma-separated tags for a new target")
    t_ensure.add_argument(
        "--find-twice",
        action="store_true",
        help="Repeat the lookup after a random delay before creating (concurrent callers)",
    )
    _add_common_args(t_ensure)

    t_rename = targets_sub.add_parser("rename", help="Rename a target (by ID or name)")
    t_rename.add_argument("target")
    t_rename.add_argument("new_name")
    _add_common_args(t_rename)

    t_tags = targets_sub.add_parser("tags", help="List or change a target's tags")
    t_tags.add_argument("target")
    t_tags.add_argument("mode", choices=list(zeronorth.TAG_MODES))
    t_tags.add_argument("tags", nargs="*", help="Tags (comma-separated or separate args); 'ALL' with delete clears")
    _add_common_args(t_tags)

    policies = sub.add_parser("policies", help="Policy operations")
    policies_sub = policies.add_subparsers(dest="policies_cmd", required=True)

    p_upload = policies_sub.add_parser(
        "ensure-upload",
        help="Look up or create a target and a manual-upload policy for it; prints the policy ID",
    )
    p_upload.add_argument("policy_name")
    p_upload.add_argument("scenario_id")
    p_upload.add_argument("integration_id")
    p_upload.add_argument("target_name")
    p_upload.add_argument("--jitter-s", type=float, default=4.0, help=argparse.SUPPRESS)
    _add_common_args(p_upload)

    p_rename = policies_sub.add_parser("rename", help="Rename a policy (by ID or name)")
    p_rename.add_argument("policy")
    p_rename.add_argument("new_name")
    _add_common_args(p_rename)

    p_run = policies_sub.add_parser("run", help="Run a policy and wait for the job to finish")
    p_run.add_argument("policy_id")
    p_run.add_argument(
        "--run-options",
        default="",
        help="JSON object (or @file) sent as options.runOptions",
    )
    p_run.add_argument("--no-wait", action="store_true", help="Return once the job has started")
    _add_wait_args(p_run)
    _add_common_args(p_run)

    apps = sub.add_parser("applications", help="Application operations")
    apps_sub = apps.add_subparsers(dest="applications_cmd", required=True)

    a_rename = apps_sub.add_parser("rename", help="Rename an application (by ID or name)")
    a_rename.add_argument("application")
    a_rename.add_argument("new_name")
    _add_common_args(a_rename)

    a_add = apps_sub.add_parser(
        "add-target",
        help="Add an existing target to an application, creating the application when absent",
    )
    a_add.add_argument("application_name")
    a_add.add_argument("target_name")
    _add_common_args(a_add)

    upload = sub.add_parser("upload", help="Run a manual-upload policy, upload an issues file and wait")
    upload.add_argument("policy_id")
    upload.add_argument("file")
    upload.add_argument(
        "--resume-delay-s",
        type=float,
        default=3.0,
        help="Pause between upload and resume (default: 3)",
    )
    _add_wait_args(upload)
    _add_common_args(upload)

    jobs = sub.add_parser("jobs", help="Job operations")
    jobs_sub = jobs.add_subparsers(dest="jobs_cmd", required=True)

    j_get = jobs_sub.add_parser("get", help="Print a job as JSON")
    j_get.add_argument("job_id")
    _add_common_args(j_get)

    j_wait = jobs_sub.add_parser("wait", help="Wait for a job to leave PENDING/RUNNING")
    j_wait.add_argument("job_id")
    _add_wait_args(j_wait)
    _add_common_args(j_wait)

    j_resume = jobs_sub.add_parser("resume", help="Resume a job")
    j_resume.add_argument("job_id")
    _add_common_args(j_resume)

    j_fail = jobs_sub.add_parser("fail", help="Mark a job as FAILED")
    j_fail.add_argument("job_id")
    _add_common_args(j_fail)

    j_list = jobs_sub.add_parser("list", help="List jobs, oldest first")
    j_list.add_argument("--since", default="", help="Only jobs created at/after this timestamp")
    j_list.add_argument("--until", default="", help="Only jobs created before this timestamp ('NOW' = no bound)")
    j_list.add_argument("--limit", type=int, default=100, help="Max jobs to fetch (default: 100)")
    j_list.add_argument("--status", default="", help="Keep only jobs with this status")
    j_list.add_argument("--policy-id", default="", help="Only jobs of this policy")
    j_list.add_argument(
        "--resume",
        action="store_true",
        help="Resume every listed job that is still PENDING or RUNNING",
    )
    j_list.add_argument("--format", choices=["csv", "json"], default="csv", help="Output format (default: csv)")
    _add_common_args(j_list)

    j_fail_active = jobs_sub.add_parser(
        "fail-active",
        help="Mark every PENDING/RUNNING job as FAILED (all policies, or --policy-id ones)",
    )
    j_fail_active.add_argument("--since", default="", help="Only jobs created at/after this timestamp")
    j_fail_active.add_argument("--until", default="", help="Only jobs created before this timestamp ('NOW' = no bound)")
    j_fail_active.add_argument("--limit", type=int, default=100, help="Max jobs to fetch per policy (default: 100)")
    j_fail_active.add_argument("--policy-id", action="append", default=None, help="Restrict to this policy (repeatable)")
    _add_destructive_args(j_fail_active)
    j_fail_active.add_argument("--format", choices=["csv", "json"], default="csv", help="Output format (default: csv)")
    _add_common_args(j_fail_active)

    j_clean = jobs_sub.add_parser("clean-onprem", help="Mark up to COUNT jobs of the on-prem queue as FAILED")
    j_clean.add_argument("count", type=int)
    j_clean.add_argument("--yes", action="store_true", help="Confirm the change")
    _add_common_args(j_clean)

    schedules = sub.add_parser("schedules", help="Policy schedule operations")
    schedules_sub = schedules.add_subparsers(dest="schedules_cmd", required=True)

    s_list = schedules_sub.add_parser("list", help="List the schedules of all policies (or --policy-id ones)")
    s_list.add_argument("--policy-id", action="append", default=None, help="Restrict to this policy (repeatable)")
    s_list.add_argument("--format", choices=["csv", "json"], default="csv", help="Output format (default: csv)")
    _add_common_args(s_list)

    s_delete = schedules_sub.add_parser("delete", help="Delete the schedules of all policies (or --policy-id ones)")
    s_delete.add_argument("--policy-id", action="append", default=None, help="Restrict to this policy (repeatable)")
    _add_destructive_args(s_delete)
    _add_common_args(s_delete)

    s_orphans = schedules_sub.add_parser(
        "delete-orphans", help="Delete the schedules left behind by a deleted policy"
    )
    s_orphans.add_argument("policy_id")
    _add_destructive_args(s_orphans)
    _add_common_args(s_orphans)

    secrets = sub.add_parser("secrets", help="usernamePassword secret operations")
    secrets_sub = secrets.add_subparsers(dest="secrets_cmd", required=True)

    sec_ensure = secrets_sub.add_parser(
        "ensure", help="Look up a secret by name, creating it when absent; prints its key"
    )
    sec_ensure.add_argument("name")
    sec_ensure.add_argument("--username", required=True)
    sec_ensure.add_argument(
        "--password-env",
        default=_SECRET_PASSWORD_ENV,
        help=f"Environment variable holding the password (default: {_SECRET_PASSWORD_ENV}; prompts when unset)",
    )
    sec_ensure.add_argument("--description", default="", help="Secret description")
    _add_common_args(sec_ensure)

    sec_get = secrets_sub.add_parser("get", help="Print a secret as username:password")
    sec_get.add_argument("key")
    _add_common_args(sec_get)

    sec_delete = secrets_sub.add_parser("delete", help="Delete a secret")
    sec_delete.add_argument("key")
    sec_delete.add_argument("--yes", action="store_true", help="Confirm the change")
    _add_common_args(sec_delete)

    tokens = sub.add_parser("tokens", help="API token operations")
    tokens_sub = tokens.add_subparsers(dest="tokens_cmd", required=True)

    tok_rotate = tokens_sub.add_parser(
        "rotate",
        help="Create a new API token and delete the current one; prints the new ID and token",
    )
    tok_rotate.add_argument("customer_name", help="Tenant name of the current key (safety check)")
    tok_rotate.add_argument("--token-id", default="", help="ID of the current token (default: its tokenId claim)")
    tok_rotate.add_argument("--prefix", default="auto", help="Description prefix of the new token (default: auto)")
    tok_rotate.add_argument("--yes", action="store_true", help="Confirm the change")
    _add_common_args(tok_rotate)

    inventory = sub.add_parser("list", help="Export every item of a collection")
    inventory.add_argument("resource", choices=list(_INVENTORY_RESOURCES))
    inventory.add_argument("--format", choices=["csv", "json"], default="csv", help="Output format (default: csv)")
    inventory.add_argument("--delimiter", default=",", help="CSV delimiter (default: ',')")
    inventory.add_argument("--no-headers", action="store_true", help="Omit the CSV header row")
    inventory.add_argument("--page-size", type=int, default=None, help="Items per request (default: 1000)")
    inventory.add_argument("--max-pages", type=int, default=0, help="Stop after this many pages (0 = all)")
    inventory.add_argument("--target-id", default="", help="syntheticIssues: only issues of this target")
    _add_common_args(inventory)

    return p


def _load_cli_config(args) -> zeronorth.Config:
    return zeronorth.load_config(
        getattr(args, "key_file", None),
        api_root=getattr(args, "api_root", None),
        http_timeout=getattr(args, "http_timeout", None),
        retry=False if getattr(args, "no_retry", False) else None,
        max_retry=getattr(args, "max_retry", None),
        backoff_max_s=getattr(args, "backoff_max_s", None),
        page_size=getattr(args, "page_size", None),
    )


def _build_client(args) -> zeronorth.Client:
    return zeronorth.Client(_load_cli_config(args))


def _credential_source(args) -> str:
    if getattr(args, "key_file", None):
        return "key-file"
    raw = (os.getenv(zeronorth.API_KEY_ENV) or "").strip()
    if not raw:
        return ""
    try:
        if Path(raw).expanduser().is_file():
            return f"{zeronorth.API_KEY_ENV} (file)"
    except OSError:
        pass
    return zeronorth.API_KEY_ENV


def _run_doctor(args) -> int:
    # Never put the token itself (or any part of it) in the payload.
    payload = {
        "ok": True,
        "cwd": str(Path.cwd()),
        "dotenv": str(_find_dotenv_path() or ""),
        "checks": {},
    }
    config = None
    try:
        config = _load_cli_config(args)
    except zeronorth.ConfigError as e:
        payload["ok"] = False
        payload["checks"]["credential"] = {"set": False, "error": str(e)}
    else:
        cred = {
            "set": True,
            "source": _credential_source(args),
            "length": len(config.token),
            "looks_short": len(config.token) < zeronorth.MIN_TOKEN_LEN,
        }
        expires = zeronorth.token_expiry(config.token)
        if expires is not None:
            cred["expires_at"] = expires.isoformat()
            cred["expired"] = expires <= datetime.now(timezone.utc)
            if cred["expired"]:
                payload["ok"] = False
        payload["checks"]["credential"] = cred
        payload["checks"]["api_root"] = config.api_root

    if args.probe and config is not None:
        client = zeronorth.Client(config)
        try:
            payload["checks"]["probe"] = {"ok": True, "customer": client.customer_name()}
        except zeronorth.ZeroNorthError as e:
            payload["ok"] = False
            payload["checks"]["probe"] = {"ok": False, "error": _describe_error(e)}
        finally:
            client.close()

    out_path = _resolve_out_path(args.out)
    if args.format == "json":
        _write_json(out_path, payload, pretty=True)
    else:
        checks = payload["checks"]
        cred = checks.get("credential") or {}
        lines = [f"ok: {'true' if payload['ok'] else 'false'}"]
        if payload["dotenv"]:
            lines.append(f"dotenv: {payload['dotenv']}")
        if cred.get("set"):
            lines.append(f"credential: set via {cred['source']} ({cred['length']} chars)")
            if cred.get("expires_at"):
                state = "expired" if cred.get("expired") else "expires"
                lines.append(f"credential {state}: {cred['expires_at']}")
        else:
            lines.append(f"credential: missing ({cred.get('error', '')})")
        if checks.get("api_root"):
            lines.append(f"api root: {checks['api_root']}")
        probe = checks.get("probe")
        if probe is not None:
            if probe.get("ok"):
                lines.append(f"probe: ok (customer={probe.get('customer')})")
            else:
                lines.append(f"probe: failed ({probe.get('error', '')})")
        _write_lines(out_path, lines)
    return 0 if payload["ok"] else 1


def _report_job(args, job: zeronorth.JobRun, *, wait: bool = True) -> int:
    out_path = _resolve_out_path(args.out)
    if args.format == "json":
        _write_json(out_path, job.as_dict(), pretty=True)
    else:
        _write_lines(out_path, [job.job_id] + ([job.status] if job.status else []))
    if not wait:
        return 0
    if job.status != _EXIT_FINISHED_STATUS:
        sys.stderr.write(f"job {job.job_id} ended with status {job.status or 'unknown'}\n")
        return 1
    return 0


def _run_command(client: zeronorth.Client, args) -> int:
    out_path = _resolve_out_path(args.out)

    if args.cmd == "whoami":
        _write_lines(out_path, [client.customer_name()])
        return 0

    if args.cmd == "find":
        found = zeronorth.find_by_name(client, args.resource, args.name)
        if found is None:
            sys.stderr.write(f"{args.resource}: '{args.name}' not found\n")
            return 1
        _write_lines(out_path, [found])
        return 0

    if args.cmd == "targets":
        if args.targets_cmd == "ensure":
            kind = zeronorth.integration_type(client, args.integration_id)
            result = zeronorth.ensure_resource(
                client,
                "targets",
                args.name,
                zeronorth.target_payload(
                    args.name, args.integration_id, kind, tags=zeronorth.parse_tags(args.tags)
                ),
                find_twice=args.find_twice,
            )
            _write_lines(out_path, [result.id])
            return 0
        if args.targets_cmd == "rename":
            _write_lines(out_path, [zeronorth.rename_resource(client, "targets", args.target, args.new_name)])
            return 0
        if args.targets_cmd == "tags":
            tags = zeronorth.apply_target_tags(client, args.target, args.mode, args.tags)
            _write_lines(out_path, tags)
            return 0

    if args.cmd == "policies":
        if args.policies_cmd == "ensure-upload":
            result = zeronorth.ensure_upload_policy(
                client,
                args.policy_name,
                args.scenario_id,
                args.integration_id,
                args.target_name,
                jitter_s=args.jitter_s,
            )
            _write_lines(out_path, [result.policy.id])
            return 0
        if args.policies_cmd == "rename":
            _write_lines(out_path, [zeronorth.rename_resource(client, "policies", args.policy, args.new_name)])
            return 0
        if args.policies_cmd == "run":
            try:
                run_options = _parse_run_options(args.run_options)
            except (OSError, ValueError) as e:
                sys.stderr.write(f"invalid --run-options: {e}\n")
                return 2
            job = zeronorth.JobDriver(client).run_and_wait(
                args.policy_id,
                run_options=run_options,
                wait=not args.no_wait,
                interval_s=args.poll_interval_s,
                timeout_s=args.timeout_s,
                max_polls=args.max_polls,
            )
            return _report_job(args, job, wait=not args.no_wait)

    if args.cmd == "applications":
        if args.applications_cmd == "rename":
            new_id = zeronorth.rename_resource(client, "applications", args.application, args.new_name)
            _write_lines(out_path, [new_id])
            return 0
        if args.applications_cmd == "add-target":
            result = zeronorth.ensure_application_target(client, args.application_name, args.target_name)
            _write_lines(out_path, [result.id])
            return 0

    if args.cmd == "upload":
        job = zeronorth.JobDriver(client).run_and_wait(
            args.policy_id,
            upload_file=args.file,
            interval_s=args.poll_interval_s,
            timeout_s=args.timeout_s,
            max_polls=args.max_polls,
            resume_delay_s=args.resume_delay_s,
        )
        return _report_job(args, job)

    if args.cmd == "jobs":
        driver = zeronorth.JobDriver(client)
        if args.jobs_cmd == "get":
            _write_json(out_path, driver.get_job(args.job_id), pretty=True)
            return 0
        if args.jobs_cmd == "wait":
            job = zeronorth.JobRun(policy_id="", job_id=args.job_id, state=zeronorth.JobState.POLLING)

            def _record(status: str) -> None:
                job.polls += 1

            job.status = driver.poll(
                args.job_id,
                args.poll_interval_s,
                timeout_s=args.timeout_s,
                max_polls=args.max_polls,
                on_status=_record,
            )
            job.state = zeronorth.JobState.TERMINAL
            return _report_job(args, job)
        if args.jobs_cmd == "resume":
            driver.resume(args.job_id)
            _write_lines(out_path, [driver.status(args.job_id)])
            return 0
        if args.jobs_cmd == "fail":
            _write_lines(out_path, [driver.fail(args.job_id)])
            return 0
        if args.jobs_cmd == "list":
            items = zeronorth.list_jobs(
                client,
                since=args.since or None,
                until=args.until or None,
                limit=args.limit,
                status=args.status or None,
                policy_id=args.policy_id or None,
            )
            if args.resume:
                for item in items:
                    status = str((item.get("data") or {}).get("status") or "").upper()
                    if status in zeronorth.ACTIVE_JOB_STATUSES:
                        driver.resume(item["id"])
            if args.format == "json":
                _write_json(out_path, items, pretty=True)
            else:
                columns, build_row = _ROW_BUILDERS["jobs"]
                _write_csv(out_path, [build_row(i) for i in items], columns=columns)
            return 0
        if args.jobs_cmd == "fail-active":
            rows = zeronorth.fail_active_jobs(
                client,
                since=args.since or None,
                until=args.until or None,
                limit=args.limit,
                policy_ids=args.policy_id,
                dry_run=args.dry_run,
            )
            if args.format == "json":
                _write_json(out_path, rows, pretty=True)
            else:
                _write_csv(out_path, rows, columns=["policyId", "policyName", "jobId", "status"])
            return 0
        if args.jobs_cmd == "clean-onprem":
            _write_lines(out_path, zeronorth.clean_onprem_queue(client, args.count))
            return 0

    if args.cmd == "schedules":
        if args.schedules_cmd == "delete-orphans":
            deleted = zeronorth.delete_orphan_schedules(client, args.policy_id, dry_run=args.dry_run)
            _write_lines(out_path, [s.id for s in deleted])
            return 0
        schedules = zeronorth.inventory_schedules(client, args.policy_id)
        if args.schedules_cmd == "list":
            rows = [s.as_dict() for s in schedules]
            if args.format == "json":
                _write_json(out_path, rows, pretty=True)
            else:
                _write_csv(out_path, rows, columns=["policy_id", "policy_name", "id", "etag"])
            return 0
        if args.schedules_cmd == "delete":
            if args.dry_run:
                _write_lines(out_path, [s.id for s in schedules])
                return 0
            deleted = zeronorth.delete_schedules(client, schedules)
            _write_lines(out_path, [s.id for s in deleted])
            if len(deleted) != len(schedules):
                sys.stderr.write(f"deleted {len(deleted)} of {len(schedules)} schedules\n")
                return 1
            return 0

    if args.cmd == "secrets":
        if args.secrets_cmd == "ensure":
            password = os.getenv(args.password_env) or getpass.getpass("Enter password: ")
            result = zeronorth.ensure_secret(
                client, args.name, args.username, password, description=args.description
            )
            _write_lines(out_path, [result.id])
            return 0
        if args.secrets_cmd == "get":
            secret = zeronorth.get_secret(client, args.key)
            _write_lines(out_path, [f"{secret.get('username') or ''}:{secret.get('password') or ''}"])
            return 0
        if args.secrets_cmd == "delete":
            zeronorth.delete_secret(client, args.key)
            return 0

    if args.cmd == "tokens":
        if args.tokens_cmd == "rotate":
            rotated = zeronorth.rotate_token(
                client, args.customer_name, args.token_id or None, prefix=args.prefix
            )
            _write_lines(out_path, [rotated.id, rotated.token])
            return 0

    if args.cmd == "list":
        params = {}
        if args.resource == "syntheticIssues" and args.target_id:
            params["targetId"] = args.target_id
        items = list(client.iter_list(args.resource, params, page_size=args.page_size, max_pages=args.max_pages))
        if args.format == "json":
            _write_json(out_path, items, pretty=True)
        else:
            columns, build_row = _ROW_BUILDERS[args.resource]
            _write_csv(
                out_path,
                [build_row(i) for i in items if isinstance(i, dict)],
                columns=columns,
                delimiter=args.delimiter,
                headers=not args.no_headers,
            )
        return 0

    sys.stderr.write("unknown command\n")
    return 2


def _command_label(args) -> str:
    sub_cmd = getattr(args, f"{args.cmd}_cmd", "")
    return f"{args.cmd} {sub_cmd}".strip()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        zeronorth.configure_logging(_resolve_cli_log_level(args))
    except zeronorth.ValidationError as e:
        sys.stderr.write(f"invalid --log-level: {e}\n")
        return 2

    if args.cmd == "doctor":
        return _run_doctor(args)

    # Commands that change or delete data carry a `--yes` flag; `--dry-run` only reports.
    if getattr(args, "yes", None) is False and not getattr(args, "dry_run", False):
        sys.stderr.write(f"{_command_label(args)}: refusing to make changes without --yes\n")
        return 2

    try:
        client = _build_client(args)
        with client:
            return _run_command(client, args)
    except zeronorth.ZeroNorthError as e:
        sys.stderr.write(f"{_command_label(args)} failed: {_describe_error(e)}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
