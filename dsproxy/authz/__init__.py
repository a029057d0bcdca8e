"""Authorization layer: policy model, rule sources, engine, hot reload and scope resolution.

Policy arrives either as two files (`model.conf` + `policy.csv`) or as
GrafanaDataSourceRule objects listed from the cluster API.
"""
