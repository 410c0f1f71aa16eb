# src/mongo_mapper/base/options.py


class DBSort:
    """Sort specifications: ``DBSort.asc("name").desc("age")`` -> ``{"name": 1, "age": -1}``."""

    class SortBuilder(dict):
        def asc(self, field_name: str) -> "DBSort.SortBuilder":
            self[field_name] = 1
            return self

        def desc(self, field_name: str) -> "DBSort.SortBuilder":
            self[field_name] = -1
            return self

    @staticmethod
    def asc(field_name: str) -> "DBSort.SortBuilder":
        return DBSort.SortBuilder().asc(field_name)

    @staticmethod
    def desc(field_name: str) -> "DBSort.SortBuilder":
        return DBSort.SortBuilder().desc(field_name)


class DBProjection:
    """Projections: ``DBProjection.include("name", "age").exclude("_id")``."""

    class ProjectionBuilder(dict):
        def include(self, *field_names: str) -> "DBProjection.ProjectionBuilder":
            for field_name in field_names:
                self[field_name] = 1
            return self

        def exclude(self, *field_names: str) -> "DBProjection.ProjectionBuilder":
            for field_name in field_names:
                self[field_name] = 0
            return self

    @staticmethod
    def include(*field_names: str) -> "DBProjection.ProjectionBuilder":
        return DBProjection.ProjectionBuilder().include(*field_names)

    @staticmethod
    def exclude(*field_names: str) -> "DBProjection.ProjectionBuilder":
        return DBProjection.ProjectionBuilder().exclude(*field_names)
