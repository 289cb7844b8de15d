# POS transaction lifecycle

from kassa.services.pos.actions import (
    apply_payment_status,
    mark_paid,
    refund_transaction,
    storno_transaction,
)
from kassa.services.pos.bridge import (
    claim_next_command,
    enqueue_command,
    register_agent,
    report_command_result,
)
from kassa.services.pos.checkout import get_checkout_status, start_checkout
