"""Workflow Mapper — turns a message's provider labels into a kanban status.

Pure functions only: no I/O, no clock, no randomness.
"""

from collections.abc import Iterable, Sequence

from kanban_sync.storage.models import SNOOZED_STATUS, ColumnRule

INBOX_LABEL = "INBOX"
DEFAULT_INBOX_STATUS = "inbox"

#: Columns every new user starts with.
DEFAULT_COLUMN_RULES: list[ColumnRule] = [
    ColumnRule(column_id="inbox", status_value="inbox", provider_label="INBOX", order_index=0, title="Inbox"),
    ColumnRule(column_id="todo", status_value="todo", provider_label="STARRED", order_index=1, title="To Do"),
    ColumnRule(column_id="done", status_value="done", provider_label=None, order_index=2, title="Done"),
]


class ColumnRuleError(ValueError):
    """Raised when a user's column rule set breaks the column constraints."""


def validate_rules(rules: Sequence[ColumnRule]) -> None:
    """Check a rule set before it is stored.

    Raises:
        ColumnRuleError: if order indexes are not contiguous from 0, more than one
            rule lacks a provider label, a column id repeats, or a rule claims the
            reserved snoozed status.
    """
    if not rules:
        raise ColumnRuleError("rule set must contain at least one column")

    orders = sorted(r.order_index for r in rules)
    if orders != list(range(len(rules))):
        raise ColumnRuleError(f"order indexes must be contiguous from 0, got {orders}")

    column_ids = [r.column_id for r in rules]
    if len(set(column_ids)) != len(column_ids):
        raise ColumnRuleError(f"duplicate column ids in {column_ids}")

    labelless = [r.column_id for r in rules if not r.provider_label]
    if len(labelless) > 1:
        raise ColumnRuleError(f"only one column may lack a provider label, got {labelless}")

    for rule in rules:
        if rule.status_value == SNOOZED_STATUS:
            raise ColumnRuleError(f"status {SNOOZED_STATUS!r} is reserved for snoozed items")


def map_status(
    rules: Sequence[ColumnRule],
    labels: Iterable[str],
    mailbox_hint: str,
) -> str:
    """Return the workflow status for a message.

    The first rule in ``order_index`` order whose provider label is present wins.
    With no match, the labelless (default) rule's status is used, and with no
    default rule the raw mailbox hint is returned unchanged.
    """
    label_set = frozenset(labels)
    ordered = sorted(rules, key=lambda r: r.order_index)

    for rule in ordered:
        if rule.provider_label and rule.provider_label in label_set:
            return rule.status_value

    for rule in ordered:
        if not rule.provider_label:
            return rule.status_value

    return mailbox_hint


def inbox_status(rules: Sequence[ColumnRule]) -> str:
    """Return the status of the user's inbox-equivalent column.

    That is the rule fed by the ``INBOX`` label, else the first column by
    ``order_index``, else plain ``"inbox"``.
    """
    ordered = sorted(rules, key=lambda r: r.order_index)
    for rule in ordered:
        if rule.provider_label == INBOX_LABEL:
            return rule.status_value
    if ordered:
        return ordered[0].status_value
    return DEFAULT_INBOX_STATUS
