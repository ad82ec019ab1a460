from stablepay.models.audit import AuditLog
from stablepay.utils.audit import log_audit


def test_audit_log_masks_sensitive_fields(db_session):
    payload = {
        "deposit_address": "0x1234567890abcdef1234567890abcdef12345678",
        "customer_email": "buyer@example.com",
        "webhook_url": "https://merchant.example/hooks/secret-path?token=abc",
        "webhook_secret": "whsec_live",
        "nested": [{"to_address": "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"}],
        "amount": "10.00",
    }

    log_audit(
        db_session,
        actor="test",
        action="MASK_TEST",
        entity="Payment",
        entity_id=1,
        data=payload,
    )
    db_session.commit()

    entry = (
        db_session.query(AuditLog)
        .filter(AuditLog.action == "MASK_TEST")
        .order_by(AuditLog.id.desc())
        .first()
    )
    assert entry is not None
    assert entry.data_json["deposit_address"] == "0x1234***5678"
    assert entry.data_json["customer_email"] == "***@example.com"
    assert entry.data_json["webhook_url"] == "https://merchant.example/***"
    assert entry.data_json["webhook_secret"] == "***"
    assert entry.data_json["nested"][0]["to_address"].startswith("0xabcd***")
    assert entry.data_json["amount"] == "10.00"
