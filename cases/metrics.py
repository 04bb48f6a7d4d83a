from prometheus_client import Counter

CASE_TRANSITIONS = Counter(
    'pn_case_transitions_total',
    'PN case transition requests by outcome',
    ['from', 'to', 'result'],
)

LEDGER_EVENTS = Counter(
    'pn_course_ledger_events_total',
    'Course usage events appended to the ledger',
    ['action'],
)
