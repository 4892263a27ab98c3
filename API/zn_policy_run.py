#!/usr/bin/python3
import json
import sys

_USAGE = """\
Usage: zn_policy_run.py <key_file> <policy_id> [<run options JSON>]

Runs the policy and waits for its job to leave PENDING/RUNNING.
Exits 0 when the job FINISHED, 1 otherwise.

Example run options:
  '{"imageName": "nginx", "imageTag": "1.21"}'
"""


def main(argv: list[str] | None = None) -> int:
    """Run a policy by ID and wait for the job to finish.

    A tiny example entrypoint; importing it performs no network calls.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        sys.stderr.write(_USAGE)
        return 1

    import zeronorth

    key_file, policy_id = args[0], args[1]
    run_options = None
    if len(args) > 2:
        try:
            run_options = json.loads(args[2])
        except ValueError as e:
            sys.stderr.write(f"run options are not valid JSON: {e}\n")
            return 1

    zeronorth.configure_logging("INFO")
    try:
        with zeronorth.Client(zeronorth.load_config(key_file)) as client:
            job = zeronorth.JobDriver(client).run_and_wait(policy_id, run_options=run_options)
    except zeronorth.ZeroNorthError as e:
        sys.stderr.write(f"{zeronorth.redact_sensitive_text(e)}\n")
        return 1

    print(job.job_id)
    return 0 if job.finished else 1


if __name__ == "__main__":
    raise SystemExit(main())
