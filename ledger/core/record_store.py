"""SQLite-backed ledger record store.

This module is a facade over focused submodules by responsibility:
schema/transactions, profiles, customers/payments, and whole-store
operations.
"""

from ledger.core.record_store_core import (
    compute_total_investment,
    initialize_record_store,
    transaction,
)
from ledger.core.record_store_profiles import (
    add_profile,
    get_profile,
    list_profiles,
    count_profiles,
    update_profile,
    delete_profile,
    add_investment_entry,
    update_investment_entry,
    delete_investment_entry,
)
from ledger.core.record_store_customers import (
    add_customer,
    get_customer,
    update_customer,
    delete_customer,
    get_customers_by_profile,
    get_active_customers_by_profile,
    get_orphan_customers,
    get_daily_customers,
    get_overdue_customers,
    search_customers,
    add_payment,
    delete_payment,
    get_payment,
    get_payments_by_customer,
    get_payments_by_date_range,
)
from ledger.core.record_store_bulk import (
    STORE_VERSION,
    get_meta,
    set_meta,
    delete_meta,
    load_metadata_map,
    clear_all,
    export_all,
    import_all,
    cleanup,
    get_storage_size,
    check_database_health,
)

__all__ = [
    "STORE_VERSION",
    "compute_total_investment",
    "initialize_record_store",
    "transaction",
    "add_profile",
    "get_profile",
    "list_profiles",
    "count_profiles",
    "update_profile",
    "delete_profile",
    "add_investment_entry",
    "update_investment_entry",
    "delete_investment_entry",
    "add_customer",
    "get_customer",
    "update_customer",
    "delete_customer",
    "get_customers_by_profile",
    "get_active_customers_by_profile",
    "get_orphan_customers",
    "get_daily_customers",
    "get_overdue_customers",
    "search_customers",
    "add_payment",
    "delete_payment",
    "get_payment",
    "get_payments_by_customer",
    "get_payments_by_date_range",
    "get_meta",
    "set_meta",
    "delete_meta",
    "load_metadata_map",
    "clear_all",
    "export_all",
    "import_all",
    "cleanup",
    "get_storage_size",
    "check_database_health",
]
