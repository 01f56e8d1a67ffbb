
"""Verify the hash chain of an audit ledger (JSONL file, or a JSON array exported from /v1/ledger)."""
import json, sys
from reliance_engine.ledger import verify_chain

def load_entries(path):
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    if text.lstrip().startswith("["):
        return json.loads(text)
    entries = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            entries.append({"_line": line_no, "_error": "malformed JSON"})
    return entries

def main(path):
    entries = load_entries(path)
    valid, errors = verify_chain(entries)
    if not valid:
        for err in errors:
            print("FAIL:", err)
        sys.exit(1)
    print(f"PASS: ledger chain valid ({len(entries)} entries)")

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/verify_ledger_chain.py <audit_ledger.jsonl|ledger_export.json>")
        raise SystemExit(2)
    main(sys.argv[1])
