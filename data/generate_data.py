#!/usr/bin/env python3
"""Generate a synthetic accounting dataset for the RiskGuard demo.

Produces client companies, counterparties, invoices and ledger transfers for
one demo tenant over the last six months, with embedded risk patterns that
the detectors are designed to catch.

Usage::

    python data/generate_data.py [--companies 6] [--seed 42]

Output:
    data/dataset.json  -- object with ``companies``, ``counterparties``,
    ``invoices`` and ``transfers`` arrays.
"""

from __future__ import annotations

import json
import random
import uuid
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Final

from faker import Faker

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

fake = Faker("tr_TR")

TENANT_ID: Final[str] = "tenant-demo"
PERIOD_DAYS: Final[int] = 180

INVOICE_PREFIXES: Final[list[str]] = ["ABC", "GIB", "EFT", "ARS", "MKR"]
AMOUNT_RANGE: Final[tuple[float, float]] = (2_500.0, 45_000.0)

# Parser flags raised upstream for a small share of documents
PARSER_FLAGS: Final[list[str]] = [
    "INV_TOTAL_MISMATCH",
    "INV_MISSING_TAX_NUMBER",
    "VAT_RATE_INCONSISTENCY",
]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _uuid() -> str:
    return str(uuid.uuid4())


def _tax_number() -> str:
    """Ten-digit VKN-shaped number."""
    return "".join(str(random.randint(0, 9)) for _ in range(10))


def _business_moment(day: date) -> datetime:
    """A timestamp inside Istanbul business hours (09:00-18:00, UTC+3)."""
    local = datetime.combine(day, time(random.randint(9, 17), random.randint(0, 59)))
    return (local - timedelta(hours=3)).replace(tzinfo=timezone.utc)


def _odd_moment(day: date) -> datetime:
    """A timestamp late at night Istanbul time."""
    local = datetime.combine(day, time(random.choice([0, 1, 2, 3, 22, 23]), random.randint(0, 59)))
    return (local - timedelta(hours=3)).replace(tzinfo=timezone.utc)


def _weekday_between(start: date, end: date) -> date:
    while True:
        day = start + timedelta(days=random.randint(0, (end - start).days))
        if day.weekday() < 5:
            return day


def _invoice(
    company_id: str,
    counterparty: dict[str, object],
    number: str,
    amount: float,
    issue_date: date,
    flags: list[str] | None = None,
) -> dict[str, object]:
    return {
        "document_id": f"DOC-{_uuid()[:12]}",
        "tenant_id": TENANT_ID,
        "client_company_id": company_id,
        "counterparty_name": counterparty["name"],
        "counterparty_tax_number": counterparty["tax_number"],
        "invoice_number": number,
        "amount": round(amount, 2),
        "currency": "TRY",
        "issue_date": issue_date.isoformat(),
        "due_date": (issue_date + timedelta(days=random.choice([15, 30, 45, 60]))).isoformat(),
        "flags": flags or [],
    }


def _transfer(
    company_id: str,
    source: str,
    target: str,
    amount: float,
    occurred_at: datetime,
) -> dict[str, object]:
    return {
        "transfer_id": f"TRF-{_uuid()[:12]}",
        "tenant_id": TENANT_ID,
        "client_company_id": company_id,
        "source_party": source,
        "target_party": target,
        "amount": round(amount, 2),
        "occurred_at": occurred_at.isoformat(),
        "reference": f"EFT{random.randint(100000, 999999)}",
    }


# ---------------------------------------------------------------------------
# Baseline records
# ---------------------------------------------------------------------------


def generate_companies(count: int) -> list[dict[str, object]]:
    companies = []
    for idx in range(1, count + 1):
        name = fake.unique.company()
        companies.append(
            {
                "id": f"CMP-{idx:03d}",
                "tenant_id": TENANT_ID,
                "name": name,
                "party_name": name,
                "is_active": True,
            }
        )
    return companies


def generate_counterparties(count: int) -> list[dict[str, object]]:
    return [
        {
            "tenant_id": TENANT_ID,
            "name": fake.unique.company(),
            "tax_number": _tax_number(),
            "address": fake.address().replace("\n", ", "),
            "contact": fake.phone_number(),
        }
        for _ in range(count)
    ]


def generate_clean_invoices(
    company_id: str,
    counterparties: list[dict[str, object]],
    start: date,
    end: date,
    count: int,
) -> list[dict[str, object]]:
    """Regular invoices with consecutive numbers per counterparty."""
    partners = random.sample(counterparties, k=min(6, len(counterparties)))
    numbering = {
        p["name"]: (random.choice(INVOICE_PREFIXES), random.randint(1000, 5000)) for p in partners
    }
    issue_dates = sorted(_weekday_between(start, end) for _ in range(count))

    invoices = []
    for issue_date in issue_dates:
        partner = random.choice(partners)
        prefix, number = numbering[partner["name"]]
        numbering[partner["name"]] = (prefix, number + 1)
        flags = [random.choice(PARSER_FLAGS)] if random.random() < 0.03 else []
        invoices.append(
            _invoice(
                company_id,
                partner,
                f"{prefix}{issue_date.year}{number:06d}",
                random.uniform(*AMOUNT_RANGE),
                issue_date,
                flags,
            )
        )
    return invoices


def generate_clean_transfers(
    company: dict[str, object],
    counterparties: list[dict[str, object]],
    start: date,
    end: date,
    count: int,
) -> list[dict[str, object]]:
    transfers = []
    for _ in range(count):
        partner = random.choice(counterparties)["name"]
        day = _weekday_between(start, end)
        source, target = (company["party_name"], partner) if random.random() < 0.6 else (partner, company["party_name"])
        transfers.append(
            _transfer(company["id"], source, target, random.uniform(*AMOUNT_RANGE), _business_moment(day))
        )
    return transfers


# ---------------------------------------------------------------------------
# Risk patterns
# ---------------------------------------------------------------------------


def inject_amount_outliers(invoices: list[dict[str, object]], count: int = 2) -> None:
    """Pattern 1: a few invoices 20-40x the usual amount, late in the period."""
    for invoice in random.sample(invoices[len(invoices) // 2:], k=count):
        invoice["amount"] = round(float(invoice["amount"]) * random.uniform(20, 40), 2)


def inject_duplicates(invoices: list[dict[str, object]], count: int = 2) -> list[dict[str, object]]:
    """Pattern 2: re-submitted invoices with the same number, amount and date."""
    duplicates = []
    for original in random.sample(invoices, k=count):
        copy = dict(original)
        copy["document_id"] = f"DOC-{_uuid()[:12]}"
        duplicates.append(copy)
    return duplicates


def generate_circular_transfers(company: dict[str, object], end: date) -> list[dict[str, object]]:
    """Pattern 3: money going company -> A -> B -> company within a week."""
    ring = [company["party_name"], fake.unique.company(), fake.unique.company()]
    amount = random.uniform(150_000, 400_000)
    day = end - timedelta(days=random.randint(10, 40))
    transfers = []
    for step, source in enumerate(ring):
        target = ring[(step + 1) % len(ring)]
        transfers.append(
            _transfer(company["id"], source, target, amount * random.uniform(0.97, 1.0), _business_moment(day + timedelta(days=step)))
        )
    return transfers


def generate_related_parties(
    company_id: str,
    start: date,
    end: date,
) -> tuple[list[dict[str, object]], list[dict[str, object]]]:
    """Pattern 4: three counterparties sharing an address and tax prefix take most of the volume."""
    shared_address = fake.address().replace("\n", ", ")
    prefix = _tax_number()[:6]
    related = [
        {
            "tenant_id": TENANT_ID,
            "name": fake.unique.company(),
            "tax_number": prefix + "".join(str(random.randint(0, 9)) for _ in range(4)),
            "address": shared_address,
            "contact": fake.phone_number(),
        }
        for _ in range(3)
    ]
    invoices = [
        _invoice(
            company_id,
            party,
            f"RLT{end.year}{1000 + idx:06d}",
            random.uniform(80_000, 160_000),
            _weekday_between(start, end),
        )
        for idx, party in enumerate(related * 4)
    ]
    return related, invoices


def inject_sequence_gap(invoices: list[dict[str, object]]) -> None:
    """Pattern 5: a jump of a few hundred numbers in one counterparty's series."""
    tail = invoices[-5:]
    for invoice in tail:
        number = str(invoice["invoice_number"])
        invoice["invoice_number"] = number[:-6] + f"{int(number[-6:]) + 400:06d}"


def round_amounts(invoices: list[dict[str, object]]) -> None:
    """Pattern 6: most amounts rounded to whole thousands."""
    for invoice in invoices:
        if random.random() < 0.8:
            invoice["amount"] = float(round(float(invoice["amount"]) / 1000) * 1000 or 1000)


def shift_to_odd_hours(transfers: list[dict[str, object]]) -> None:
    """Pattern 7: transfers booked at night and at weekends."""
    for transfer in transfers:
        day = datetime.fromisoformat(str(transfer["occurred_at"])).date()
        if random.random() < 0.5:
            day += timedelta(days=5 - day.weekday()) if day.weekday() < 5 else timedelta()
        transfer["occurred_at"] = _odd_moment(day).isoformat()


# ---------------------------------------------------------------------------
# Dataset assembly
# ---------------------------------------------------------------------------


def generate_dataset(companies: int = 6) -> dict[str, list[dict[str, object]]]:
    """Assemble the full synthetic dataset with embedded risk patterns.

    The first companies each carry one structural pattern; the rest are
    clean apart from scattered document-level anomalies.  Invoices are
    sorted by issue date so each one is scored against its own history.

    Args:
        companies: Number of client companies to generate (at least 5).

    Returns:
        Dataset dictionary ready for ``RiskScoringPipeline.ingest_dataset``.
    """
    end = date.today()
    start = end - timedelta(days=PERIOD_DAYS)

    company_rows = generate_companies(max(5, companies))
    counterparty_rows = generate_counterparties(25)
    invoices: list[dict[str, object]] = []
    transfers: list[dict[str, object]] = []

    for idx, company in enumerate(company_rows):
        company_invoices = generate_clean_invoices(company["id"], counterparty_rows, start, end, 60)
        company_transfers = generate_clean_transfers(company, counterparty_rows, start, end, 30)

        inject_amount_outliers(company_invoices)
        company_invoices.extend(inject_duplicates(company_invoices, count=1))

        if idx == 0:
            company_transfers.extend(generate_circular_transfers(company, end))
        elif idx == 1:
            related, related_invoices = generate_related_parties(company["id"], start, end)
            counterparty_rows.extend(related)
            company_invoices.extend(related_invoices)
        elif idx == 2:
            inject_sequence_gap(company_invoices)
        elif idx == 3:
            round_amounts(company_invoices)
        elif idx == 4:
            shift_to_odd_hours(company_transfers)

        invoices.extend(company_invoices)
        transfers.extend(company_transfers)

    invoices.sort(key=lambda x: str(x["issue_date"]))
    transfers.sort(key=lambda x: str(x["occurred_at"]))

    return {
        "companies": company_rows,
        "counterparties": counterparty_rows,
        "invoices": invoices,
        "transfers": transfers,
    }


def _print_summary(dataset: dict[str, list[dict[str, object]]]) -> None:
    invoices = dataset["invoices"]
    amounts = [float(inv["amount"]) for inv in invoices]
    flagged = sum(1 for inv in invoices if inv["flags"])

    print(f"\n{'=' * 60}")
    print("  RiskGuard Synthetic Dataset Summary")
    print(f"{'=' * 60}")
    print(f"  Companies:               {len(dataset['companies'])}")
    print(f"  Counterparties:          {len(dataset['counterparties'])}")
    print(f"  Invoices:                {len(invoices)}")
    print(f"  Transfers:               {len(dataset['transfers'])}")
    print(f"  Parser-flagged invoices: {flagged}")
    if amounts:
        print(f"  Amount min / max:        {min(amounts):,.2f} / {max(amounts):,.2f} TRY")
    print(f"{'=' * 60}\n")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate a synthetic RiskGuard dataset")
    parser.add_argument(
        "--companies", type=int, default=6,
        help="Number of client companies to generate (default: 6)",
    )
    parser.add_argument(
        "--seed", type=int, default=42,
        help="Random seed for reproducibility (default: 42)",
    )
    parser.add_argument(
        "--output", type=str, default=None,
        help="Output file path (default: data/dataset.json)",
    )
    args = parser.parse_args()

    random.seed(args.seed)
    Faker.seed(args.seed)

    print(f"Generating dataset for {args.companies} companies (seed={args.seed})...")
    dataset = generate_dataset(companies=args.companies)

    output = Path(args.output) if args.output else Path(__file__).parent / "dataset.json"
    with output.open("w", encoding="utf-8") as fh:
        json.dump(dataset, fh, ensure_ascii=False, indent=2)

    _print_summary(dataset)
    print(f"Wrote {output}")
