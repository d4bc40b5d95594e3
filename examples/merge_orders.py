import sys
import threading
from dataclasses import dataclass, field
from typing import List

import bulkmerge
from bulkmerge import CancellationToken, SchemaRegistry, bulk_merge

"""
Merges a day's orders into SQL Server. New orders get their Id from the
IDENTITY column, existing orders (Id > 0) have Customer and Total updated.

CREATE TABLE dbo.Orders (
  Id        int IDENTITY(1,1) PRIMARY KEY,
  Customer  nvarchar(100) NOT NULL,
  Total     decimal(12,2) NOT NULL
);

bulkmerge.yml needs a connection named 'warehouse'.
"""


@dataclass
class Order:
    id: int
    customer: str
    total: float
    lines: List[str] = field(default_factory=list)


def todays_orders():
    yield Order(0, 'Aang', 10.00, ['glider wax'])
    yield Order(0, 'Katara', 25.50, ['water skin', 'healing salve'])
    yield Order(42, 'Sokka', 99.95, ['boomerang'])


if __name__ == '__main__':
    bulkmerge.setup_logging('merge_orders')
    registry = SchemaRegistry()
    registry.register_dataclass(Order, table='Orders', schema='dbo',
                                primary_key=['id'], generated=['id'],
                                column_names={'id': 'Id', 'customer': 'Customer', 'total': 'Total'})

    # give up on a merge that takes longer than five minutes
    token = CancellationToken()
    timer = threading.Timer(300, token.cancel)
    timer.start()
    try:
        with bulkmerge.connect('warehouse') as db:
            result = bulk_merge(db, registry, Order, todays_orders(), cancel=token,
                                batch_size=5000, raise_error=False)
    finally:
        timer.cancel()

    print(result)
    if result.cleanup_error:
        print(f"Staging table {result.staging_name} was left behind: {result.cleanup_error}")
    error_log = bulkmerge.errors_logged()
    if error_log:
        print(f"Errors were logged to {error_log}")
    sys.exit(0 if result.ok else 1)
