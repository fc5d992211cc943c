"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .customer import (
    CustomerRecordFactory,
    CustomerRowFactory,
    HighValueCustomerFactory,
    AtRiskCustomerFactory,
    BlankCustomerFactory,
)

__all__ = [
    "CustomerRecordFactory",
    "CustomerRowFactory",
    "HighValueCustomerFactory",
    "AtRiskCustomerFactory",
    "BlankCustomerFactory",
]
