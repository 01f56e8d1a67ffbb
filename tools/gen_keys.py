
import os, json, sys
from reliance_engine.keys import generate_keypair

def main(counterparty_id: str = "BANK-001", kid: str = "counterparty-01"):
    os.makedirs("secrets", exist_ok=True)
    os.makedirs("trust", exist_ok=True)

    private_b64, public_b64 = generate_keypair()

    with open("secrets/counterparty_signing_key.json", "w", encoding="utf-8") as f:
        json.dump({"kid": kid, "counterparty_id": counterparty_id, "private_key_b64": private_b64}, f, indent=2)

    trust = {
        "trust_store_id": "reliance-trust-store-demo",
        "counterparty_keys": {
            kid: {"counterparty_id": counterparty_id, "public_key_b64": public_b64}
        }
    }

    with open("trust/trust_store.json", "w", encoding="utf-8") as f:
        json.dump(trust, f, indent=2)

    print(f"Generated {kid} for {counterparty_id} + trust store.")

if __name__ == "__main__":
    if len(sys.argv) not in (1, 3):
        print("Usage: python tools/gen_keys.py [<counterparty_id> <kid>]"); raise SystemExit(2)
    main(*sys.argv[1:])
