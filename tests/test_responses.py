from __future__ import annotations

import json

from sunrise.api.responses import paginated_response, parse_pagination_params


def test_parse_pagination_defaults_and_clamps():
    pg = parse_pagination_params()
    assert (pg.page, pg.limit, pg.skip) == (1, 20, 0)

    pg = parse_pagination_params("3", "10")
    assert (pg.page, pg.limit, pg.skip) == (3, 10, 20)

    assert parse_pagination_params(0, 0).page == 1
    assert parse_pagination_params(0, 0).limit == 1
    assert parse_pagination_params(1, 500).limit == 100
    assert parse_pagination_params("abc", "x").limit == 20


def test_paginated_response_meta():
    resp = paginated_response([{"id": 1}], page=2, limit=10, total=21)
    body = json.loads(resp.body)
    assert body["success"] is True
    assert body["meta"] == {"page": 2, "limit": 10, "total": 21, "totalPages": 3}
