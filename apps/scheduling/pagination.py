from rest_framework.pagination import LimitOffsetPagination


class DefaultLimitOffsetPagination(LimitOffsetPagination):
    """
    Limit/offset pagination for the appointment reminder listing.
    """

    default_limit = 25
    max_limit = 200
