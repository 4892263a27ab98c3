#!/usr/bin/python3
"""
Upload an issues file through a manual-upload policy.

    zn_upload_issues.py <policy_id> <issues_file> [<key_file>]

Without <key_file> the API key comes from the API_KEY environment variable (or `.env`).
"""
import sys


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        sys.stderr.write(__doc__.lstrip())
        return 1

    import zeronorth

    policy_id, issues_file = args[0], args[1]
    key_file = args[2] if len(args) > 2 else None

    zeronorth.configure_logging("INFO")
    try:
        with zeronorth.Client(zeronorth.load_config(key_file)) as client:
            job = zeronorth.JobDriver(client).run_and_wait(policy_id, upload_file=issues_file)
    except zeronorth.ZeroNorthError as e:
        sys.stderr.write(f"{zeronorth.redact_sensitive_text(e)}\n")
        return 1

    if not job.finished:
        sys.stderr.write(f"job {job.job_id} ended with status {job.status}\n")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
