"""Top-level package for the ReceiptGold backend functions.

The package hosts the event-driven side of the receipt app: billing
webhooks from RevenueCat, the confirm-payment RPC, Firebase Auth lifecycle
triggers, the device gate used before signup, bank-connection health and
the scheduled sweeps that keep subscription, usage and account records
consistent.

To run the API locally you can execute:

```bash
uvicorn receiptgold.api.main:app --reload
```

and the worker (sweeps and eventing-bridge deliveries) with:

```bash
dramatiq receiptgold.worker --processes 1 --threads 4
```
"""

__version__ = "1.0.0"

__all__: list[str] = ["__version__"]
