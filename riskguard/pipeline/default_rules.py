"""Built-in risk rule catalog.

Rules:
    AMOUNT_OUTLIER              -- Invoice amount far outside the company's history.
    DATE_ANOMALY                -- Implausible issue/due dates.
    DUPLICATE_INVOICE           -- Same invoice already booked within the lookback window.
    BENFORD_DEVIATION           -- Leading digits of the company's amounts deviate from Benford.
    COMPANY_BENFORD_DEVIATION   -- Same digit test, evaluated on a company run.
    CIRCULAR_TRANSACTIONS       -- Material money cycles between parties (A->B->C->A).
    RELATED_PARTY_CONCENTRATION -- Counterparties sharing identifiers dominate the volume.
    INVOICE_SEQUENCE_ANOMALY    -- Gaps, backward jumps or repeats in invoice numbers.
    ROUND_AMOUNT_PATTERN        -- Too many round amounts.
    UNUSUAL_TIMING              -- Transfers clustered off-hours, on weekends or at month-end.

Parser flags (raised upstream, scored here):
    INV_TOTAL_MISMATCH, INV_MISSING_TAX_NUMBER, VAT_RATE_INCONSISTENCY

Database rows override these definitions by code (see ``RuleRegistryCache``).
"""

from __future__ import annotations

from riskguard.pipeline.types import Rule, RuleCategory, RuleScope, Severity

DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(
        code="AMOUNT_OUTLIER",
        description="Tutar, şirketin geçmiş tutar dağılımının çok dışında",
        severity=Severity.HIGH,
        weight=70,
        category=RuleCategory.FINANCIAL,
        scope=RuleScope.DOCUMENT,
    ),
    Rule(
        code="DATE_ANOMALY",
        description="Fatura veya vade tarihi tutarsız",
        severity=Severity.MEDIUM,
        weight=30,
        category=RuleCategory.COMPLIANCE,
        scope=RuleScope.DOCUMENT,
    ),
    Rule(
        code="DUPLICATE_INVOICE",
        description="Aynı fatura kısa süre içinde tekrar kaydedilmiş",
        severity=Severity.HIGH,
        weight=45,
        category=RuleCategory.FRAUD,
        scope=RuleScope.DOCUMENT,
    ),
    Rule(
        code="BENFORD_DEVIATION",
        description="Tutarların ilk basamak dağılımı Benford Yasası'na uymuyor",
        severity=Severity.MEDIUM,
        weight=25,
        category=RuleCategory.FRAUD,
        scope=RuleScope.DOCUMENT,
    ),
    Rule(
        code="COMPANY_BENFORD_DEVIATION",
        description="Şirket işlemlerinin ilk basamak dağılımı Benford Yasası'na uymuyor",
        severity=Severity.MEDIUM,
        weight=25,
        category=RuleCategory.FRAUD,
        scope=RuleScope.COMPANY,
    ),
    Rule(
        code="CIRCULAR_TRANSACTIONS",
        description="Taraflar arasında döngüsel para akışı tespit edildi",
        severity=Severity.CRITICAL,
        weight=60,
        category=RuleCategory.FRAUD,
        scope=RuleScope.COMPANY,
    ),
    Rule(
        code="RELATED_PARTY_CONCENTRATION",
        description="Ortak kimlik bilgisine sahip karşı taraflar hacmin büyük kısmını oluşturuyor",
        severity=Severity.HIGH,
        weight=40,
        category=RuleCategory.FRAUD,
        scope=RuleScope.COMPANY,
    ),
    Rule(
        code="INVOICE_SEQUENCE_ANOMALY",
        description="Fatura numarası sıralamasında boşluk veya geri sıçrama",
        severity=Severity.MEDIUM,
        weight=20,
        category=RuleCategory.COMPLIANCE,
        scope=RuleScope.COMPANY,
    ),
    Rule(
        code="ROUND_AMOUNT_PATTERN",
        description="Yuvarlak tutarlı işlemlerin oranı olağandışı yüksek",
        severity=Severity.MEDIUM,
        weight=20,
        category=RuleCategory.FRAUD,
        scope=RuleScope.COMPANY,
    ),
    Rule(
        code="UNUSUAL_TIMING",
        description="İşlemler mesai dışı, hafta sonu veya ay sonunda yoğunlaşıyor",
        severity=Severity.LOW,
        weight=15,
        category=RuleCategory.OPERATIONAL,
        scope=RuleScope.COMPANY,
    ),
    Rule(
        code="INV_TOTAL_MISMATCH",
        description="Fatura kalemleri toplamı genel toplamla uyuşmuyor",
        severity=Severity.MEDIUM,
        weight=20,
        category=RuleCategory.FINANCIAL,
        scope=RuleScope.DOCUMENT,
    ),
    Rule(
        code="INV_MISSING_TAX_NUMBER",
        description="Faturada vergi numarası eksik",
        severity=Severity.LOW,
        weight=10,
        category=RuleCategory.COMPLIANCE,
        scope=RuleScope.DOCUMENT,
    ),
    Rule(
        code="VAT_RATE_INCONSISTENCY",
        description="KDV oranı fatura kalemleriyle tutarsız",
        severity=Severity.MEDIUM,
        weight=20,
        category=RuleCategory.COMPLIANCE,
        scope=RuleScope.DOCUMENT,
    ),
)

DEFAULT_RULE_CODES: frozenset[str] = frozenset(rule.code for rule in DEFAULT_RULES)
