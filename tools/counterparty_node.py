
"""
Reference counterparty liveness responder.

Answers the engine's challenge with a signature from the key written by
tools/gen_keys.py. Stop it (or delete the key) to watch the kill switch
escalate.

    PYTHONPATH=. python tools/counterparty_node.py [port]
"""
import json, os, sys
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from reliance_engine.keys import sign_ed25519
from reliance_engine.liveness import ACCESS_CONFIRMED, proof_payload

KEY_PATH = os.getenv("COUNTERPARTY_KEY_PATH", "secrets/counterparty_signing_key.json")

app = FastAPI(title="Counterparty liveness node (demo)")


class Challenge(BaseModel):
    challenge: str
    counterparty_id: str


def load_key():
    with open(KEY_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


@app.post("/v1/heartbeat-response")
def heartbeat_response(req: Challenge):
    try:
        key = load_key()
    except FileNotFoundError:
        # key material gone: no proof can be produced
        raise HTTPException(503, "KEY_UNAVAILABLE")
    if req.counterparty_id != key["counterparty_id"]:
        raise HTTPException(404, "UNKNOWN_COUNTERPARTY")
    signature = sign_ed25519(proof_payload(req.challenge, req.counterparty_id), key["private_key_b64"])
    return {
        "status": ACCESS_CONFIRMED,
        "challenge": req.challenge,
        "counterparty_id": req.counterparty_id,
        "kid": key["kid"],
        "signature_b64": signature,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=int(sys.argv[1]) if len(sys.argv) > 1 else 3001)
