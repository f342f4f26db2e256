"""
Signals sent by models and queries.

Model signals are sent with ``sender`` set to the model class and ``instance``
set to the model.  :py:data:`query_executed` is sent by
:py:class:`~ldapmapper.query.Builder` after every search with ``query``,
``type`` (``read``, ``listing``, ``search``, ``paginate`` or ``chunk``) and
``time`` (elapsed milliseconds).
"""

from django.dispatch import Signal

pre_save = Signal()
post_save = Signal()
pre_create = Signal()
post_create = Signal()
pre_update = Signal()
post_update = Signal()
pre_delete = Signal()
post_delete = Signal()
pre_rename = Signal()
post_rename = Signal()

query_executed = Signal()
