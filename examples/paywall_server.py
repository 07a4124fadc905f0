"""
Minimal x402-protected resource on Solana devnet.

GET /data answers 402 with payment requirements until the request carries a
Payment-Signature header, which is settled through the facilitator.

    PAY_TO=<merchant wallet> FEE_PAYER=<facilitator fee payer> python paywall_server.py
"""

import os

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from purser.constants import SOLANA_CAIP2, USDC_MINT_DEVNET
from purser.errors import FacilitatorError
from purser.facilitator_client import FacilitatorClient
from purser.x402 import (
    PAYMENT_SIGNATURE_HEADERS,
    X402_VERSION,
    PaymentRequirements,
    RequirementsFormatError,
    decode_header,
    encode_header,
)

app = FastAPI()

REQUIREMENTS = PaymentRequirements(
    scheme="exact",
    network=SOLANA_CAIP2["devnet"],
    asset=USDC_MINT_DEVNET,
    amount=1_000,  # 0.001 USDC
    pay_to=os.environ["PAY_TO"],
    max_timeout_seconds=60,
    extra={"feePayer": os.environ["FEE_PAYER"], "decimals": 6},
)

facilitator = FacilitatorClient(
    os.getenv("X402_FACILITATOR_URL", "http://127.0.0.1:4020"),
    os.getenv("X402_FACILITATOR_FALLBACK_URL"),
)


def payment_required(error=None):
    body = {"x402Version": X402_VERSION, "accepts": [REQUIREMENTS.to_dict()]}
    if error:
        body["error"] = error
    return JSONResponse(status_code=402, content=body, headers={"Payment-Required": encode_header(body)})


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/data")
def data(request: Request):
    header = next((request.headers[h] for h in PAYMENT_SIGNATURE_HEADERS if h in request.headers), None)
    if header is None:
        return payment_required()

    try:
        payload = decode_header(header)
        settled = facilitator.settle(payload, REQUIREMENTS.to_dict())
    except (RequirementsFormatError, FacilitatorError) as e:
        return payment_required(str(e))

    return JSONResponse(
        content={"message": "Payment successful!", "cost": "0.001 USDC"},
        headers={"Payment-Response": encode_header(settled)},
    )


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8402)
