"""Installment plans for split card charges."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class InstallmentPlan:
    """
    How a card charge is spread over monthly payments.

    All sums are integer minor units. ``first_payment + other_payments *
    (num_payments - 1)`` always equals the charged total.
    """

    num_payments: int
    first_payment: int
    other_payments: int

    @property
    def total(self) -> int:
        return self.first_payment + self.other_payments * (self.num_payments - 1)

    @property
    def is_single(self) -> bool:
        return self.num_payments == 1

    @classmethod
    def split(
        cls,
        total: int,
        num_payments: int,
        first_payment: Optional[int] = None,
        other_payments: Optional[int] = None,
    ) -> InstallmentPlan:
        """
        Build a plan for ``total`` over ``num_payments``.

        Without explicit sums every payment gets ``total // num_payments`` and the
        remainder goes to the first one, e.g. 10000 over 3 is 3334 + 3333 + 3333.

        Raises:
            ValueError: If the sums cannot add up to ``total``
        """
        if isinstance(num_payments, bool) or not isinstance(num_payments, int):
            raise ValueError("Number of payments must be an integer")
        if num_payments < 1:
            raise ValueError("Number of payments must be at least 1")
        if total <= 0:
            raise ValueError("Installment total must be positive")

        if num_payments == 1:
            if first_payment not in (None, total):
                raise ValueError("A single payment must equal the total")
            return cls(num_payments=1, first_payment=total, other_payments=0)

        rest = num_payments - 1
        if first_payment is None and other_payments is None:
            other_payments = total // num_payments
            first_payment = total - other_payments * rest
        elif first_payment is None:
            first_payment = total - other_payments * rest
        elif other_payments is None:
            remaining = total - first_payment
            if remaining % rest:
                raise ValueError(
                    f"{remaining} cannot be split evenly over {rest} payments"
                )
            other_payments = remaining // rest

        if first_payment <= 0 or other_payments <= 0:
            raise ValueError(
                f"Amount {total} is too small for {num_payments} installments"
            )

        plan = cls(
            num_payments=num_payments,
            first_payment=first_payment,
            other_payments=other_payments,
        )
        if plan.total != total:
            raise ValueError(
                f"Installments sum to {plan.total}, expected {total}"
            )
        return plan
