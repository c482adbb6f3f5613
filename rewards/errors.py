class RewardServiceError(Exception):
    pass


class InsufficientInventoryError(RewardServiceError):
    def __init__(self, shortfall: int, required: int, capacity: int):
        self.shortfall = shortfall
        self.required = required
        self.capacity = capacity
        super().__init__(
            f"Insufficient inventory: {required} units required, {capacity} available "
            f"(short by {shortfall})"
        )


class NotAuthorizedError(RewardServiceError):
    pass


class NotificationError(Exception):
    pass


class GroupNotEnrolledError(RewardServiceError):
    pass
