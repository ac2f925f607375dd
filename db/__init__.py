from .db import create_all, dispose_engine, get_engine, session_scope, utcnow  # noqa: F401
from .store import (  # noqa: F401
    advance_schedule,
    claim_reminder,
    complete_dispatch,
    contact_id_for,
    delete_account_row,
    delete_batch,
    fail_dispatch,
    fetch_changes,
    fetch_due_reminders,
    fetch_stale_reminders,
    find_contacts_by_phone,
    find_open_occurrence,
    get_account,
    get_contact,
    get_reminder,
    get_response_by_message_id,
    head_seq,
    insert_reminder,
    list_contact_ids,
    log_sms,
    oldest_seq,
    purge_change_log_before,
    purge_feed_events_before,
    record_completion,
    record_contact_reply,
    record_response,
    roll_quota_period,
    row_dict,
    snapshot,
    update_fields,
    upsert_account,
    upsert_contact,
)
